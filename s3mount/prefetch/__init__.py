"""Prefetching object reads through growing ranged GET requests fed into part queues."""