"""Prefetching object reads, thread-local metrics and the mount-s3 command line."""

__version__ = "0.1.0"