"""Command-line entry point for mounting a bucket as a file system."""

from __future__ import annotations

import argparse
import enum
import logging
import os
import queue
import re
import signal
import sys
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional, Protocol, Sequence
from urllib.parse import urlparse

from .metrics.sink import MetricsSink

logger = logging.getLogger(__name__)

FULL_VERSION = "0.1.0"
PROGRAM_NAME = "mount-s3"
FS_NAME = "mountpoint-s3"
DEFAULT_REGION = "us-east-1"
DEFAULT_DIR_MODE = 0o755
DEFAULT_FILE_MODE = 0o644
LOG_DIRECTORY = ".mountpoint-s3"
LOG_FILE_NAME_FORMAT = "mountpoint_s3_%Y%m%d%H%M%S.log"
LOG_LEVEL_ENV = "S3MOUNT_LOG"
MOUNT_READY_TIMEOUT = 30

_U32_MAX = 2**32 - 1
_U64_MAX = 2**64 - 1
_OCTAL = re.compile(r"\+?[0-7]+")
_DECIMAL = re.compile(r"\+?[0-9]+")


class CliError(Exception):
    """A command-line run failed with a message meant for the user."""


class AddressingStyle(enum.Enum):
    """How the bucket name is placed in request URLs."""

    AUTOMATIC = "automatic"
    VIRTUAL = "virtual"
    PATH = "path"


@dataclass
class CliArgs:
    """Parsed command-line arguments."""

    bucket_name: str
    mount_point: Path
    log_directory: Optional[Path] = None
    prefix: Optional[str] = None
    region: Optional[str] = None
    endpoint_url: Optional[str] = None
    virtual_addressing: bool = False
    path_addressing: bool = False
    auto_unmount: bool = False
    allow_root: bool = False
    allow_other: bool = False
    throughput_target_gbps: Optional[int] = None
    thread_count: Optional[int] = None
    part_size: Optional[int] = None
    uid: Optional[int] = None
    gid: Optional[int] = None
    dir_mode: Optional[int] = None
    file_mode: Optional[int] = None
    foreground: bool = False

    def addressing_style(self) -> AddressingStyle:
        if self.virtual_addressing:
            return AddressingStyle.VIRTUAL
        if self.path_addressing:
            return AddressingStyle.PATH
        return AddressingStyle.AUTOMATIC


def parse_perm_bits(text: str) -> int:
    """Parse an octal permission string such as ``755``.

    Raises ValueError if the text is not octal or has bits beyond user/group/other.
    """
    if not _OCTAL.fullmatch(text):
        raise ValueError("must be a valid octal number")
    perm = int(text, 8)
    if perm > 0xFFFF:
        raise ValueError("must be a valid octal number")
    if perm > 0o777:
        raise ValueError("only user/group/other permissions are supported")
    return perm


def _bounded_int(maximum: int) -> Callable[[str], int]:
    def parse(text: str) -> int:
        if not _DECIMAL.fullmatch(text):
            raise ValueError("invalid digit found in string")
        value = int(text)
        if value > maximum:
            raise ValueError("number too large to fit in target type")
        if value < 1:
            raise ValueError(f"{value} is not in 1..={maximum}")
        return value

    return parse


# (destination, option flag, value name, converter)
_CONVERTED_OPTIONS: tuple[tuple[str, str, str, Callable[[str], int]], ...] = (
    ("throughput_target_gbps", "--throughput-target-gbps", "N (Gbps)", _bounded_int(_U64_MAX)),
    ("thread_count", "--thread-count", "N", _bounded_int(_U64_MAX)),
    ("part_size", "--part-size", "PART_SIZE", _bounded_int(_U64_MAX)),
    ("uid", "--uid", "UID", _bounded_int(_U32_MAX)),
    ("gid", "--gid", "GID", _bounded_int(_U32_MAX)),
    ("dir_mode", "--dir-mode", "DIR_MODE", parse_perm_bits),
    ("file_mode", "--file-mode", "FILE_MODE", parse_perm_bits),
)


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser for the mount command."""
    parser = argparse.ArgumentParser(prog=PROGRAM_NAME, description="Mountpoint for Amazon S3")
    parser.add_argument("bucket_name", help="Name of bucket to mount")
    parser.add_argument("mount_point", help="Mount point for file system")
    parser.add_argument(
        "-l", "--log-directory", help="Log file directory. [default: $HOME/.mountpoint-s3]"
    )
    parser.add_argument(
        "--prefix", help="Prefix inside the bucket to mount. Mounts the entire bucket if unspecified."
    )
    parser.add_argument("--region", help="AWS region of the bucket")
    parser.add_argument("--endpoint-url", help="Override S3 endpoint URL")
    parser.add_argument(
        "--virtual-addressing", action="store_true", help="Force virtual-host-style addressing"
    )
    parser.add_argument("--path-addressing", action="store_true", help="Force path-style addressing")
    parser.add_argument("--auto-unmount", action="store_true", help="Automatically unmount on exit")
    parser.add_argument(
        "--allow-root", action="store_true", help="Allow root user to access file system"
    )
    parser.add_argument(
        "--allow-other",
        action="store_true",
        help="Allow other non-root users to access file system",
    )
    parser.add_argument(
        "--throughput-target-gbps", metavar="N (Gbps)", help="Desired throughput in Gbps"
    )
    parser.add_argument("--thread-count", metavar="N", help="Number of FUSE daemon threads")
    parser.add_argument("--part-size", metavar="PART_SIZE", help="Part size for multi-part GET and PUT")
    parser.add_argument("--uid", metavar="UID", help="Owner UID [default: current user's UID]")
    parser.add_argument("--gid", metavar="GID", help="Owner GID [default: current user's GID]")
    parser.add_argument("--dir-mode", metavar="DIR_MODE", help="Directory permissions [default: 0755]")
    parser.add_argument("--file-mode", metavar="FILE_MODE", help="File permissions [default: 0644]")
    parser.add_argument("-f", "--foreground", action="store_true", help="Run as foreground process")
    parser.add_argument(
        "-V", "--version", action="version", version=f"{FS_NAME} {FULL_VERSION}"
    )
    return parser


def parse_args(argv: Optional[Sequence[str]] = None) -> CliArgs:
    """Parse command-line arguments, exiting with a usage message on error."""
    parser = build_parser()
    namespace = parser.parse_args(argv)

    if namespace.virtual_addressing and namespace.path_addressing:
        parser.error("The argument '--virtual-addressing' cannot be used with '--path-addressing'")

    values = vars(namespace)
    for dest, flag, value_name, convert in _CONVERTED_OPTIONS:
        raw = values[dest]
        if raw is None:
            continue
        try:
            values[dest] = convert(raw)
        except ValueError as exc:
            parser.error(f"invalid value '{raw}' for '{flag} <{value_name}>': {exc}")

    values["mount_point"] = Path(values["mount_point"])
    if values["log_directory"] is not None:
        values["log_directory"] = Path(values["log_directory"])
    return CliArgs(**values)


def validate_mount_point(path: os.PathLike | str) -> Path:
    """Return the mount point as a path; raise CliError unless it is an existing directory."""
    mount_point = Path(path)
    if not mount_point.is_dir():
        raise CliError(f"Mount point {mount_point} does not exist or it is not a directory")
    return mount_point


@dataclass(frozen=True)
class _MountSettings:
    """Everything needed to create the client and the FUSE session."""

    bucket_name: str
    mount_point: Path
    prefix: str
    region: str
    region_specified: bool
    endpoint_url: Optional[str]
    addressing_style: AddressingStyle
    throughput_target_gbps: Optional[float]
    part_size: Optional[int]
    user_agent_prefix: str
    uid: int
    gid: int
    dir_mode: int
    file_mode: int
    options: tuple[str, ...]
    thread_count: int


class _Session(Protocol):
    def join(self) -> None:
        ...


_Mounter = Callable[[_MountSettings], _Session]


def _check_endpoint(url: str) -> str:
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise CliError(f"Failed to parse endpoint URL: {url!r} is not a valid URI")
    return url


def _mount_settings(args: CliArgs) -> _MountSettings:
    endpoint = _check_endpoint(args.endpoint_url) if args.endpoint_url is not None else None
    if args.region is None and endpoint is not None:
        logger.warning(
            "endpoint specified but region unspecified. using %s as the signing region.",
            DEFAULT_REGION,
        )

    options = ["ro", "default_permissions", f"fsname={FS_NAME}", "noatime"]
    if args.auto_unmount:
        options.append("auto_unmount")
    if args.allow_root:
        options.append("allow_root")
    if args.allow_other:
        options.append("allow_other")

    return _MountSettings(
        bucket_name=args.bucket_name,
        mount_point=args.mount_point,
        prefix=args.prefix or "",
        region=args.region or DEFAULT_REGION,
        region_specified=args.region is not None,
        endpoint_url=endpoint,
        addressing_style=args.addressing_style(),
        throughput_target_gbps=(
            float(args.throughput_target_gbps) if args.throughput_target_gbps is not None else None
        ),
        part_size=args.part_size,
        user_agent_prefix=f"{FS_NAME}/{FULL_VERSION}",
        uid=args.uid if args.uid is not None else os.getuid(),
        gid=args.gid if args.gid is not None else os.getgid(),
        dir_mode=args.dir_mode if args.dir_mode is not None else DEFAULT_DIR_MODE,
        file_mode=args.file_mode if args.file_mode is not None else DEFAULT_FILE_MODE,
        options=tuple(options),
        thread_count=args.thread_count or 1,
    )


def _no_backend(settings: _MountSettings) -> _Session:
    raise CliError(
        "Failed to create FUSE session: no FUSE filesystem backend is available "
        f"to mount bucket {settings.bucket_name}"
    )


def _level(name: str) -> Optional[int]:
    name = name.strip().lower()
    if name == "off":
        return None
    levels = {"trace": logging.DEBUG, "debug": logging.DEBUG, "info": logging.INFO,
              "warn": logging.WARNING, "warning": logging.WARNING, "error": logging.ERROR}
    if name not in levels:
        raise CliError(f"failed to initialize logging: unknown log level {name!r}")
    return levels[name]


def _init_logging(is_foreground: bool, log_directory: Optional[Path]) -> None:
    configured = os.environ.get(LOG_LEVEL_ENV)
    file_level = _level(configured if configured is not None else "error")
    if file_level is None:
        return

    directory = log_directory if log_directory is not None else Path.home() / LOG_DIRECTORY
    try:
        directory.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise CliError(f"failed to initialize logging: failed to create log folder: {exc}") from exc
    filename = datetime.now(timezone.utc).strftime(LOG_FILE_NAME_FORMAT)
    try:
        file_handler = logging.FileHandler(directory / filename)
    except OSError as exc:
        raise CliError(f"failed to initialize logging: failed to create log file: {exc}") from exc

    formatter = logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
    file_handler.setLevel(file_level)
    file_handler.setFormatter(formatter)
    root = logging.getLogger("s3mount")
    root.addHandler(file_handler)
    levels = [file_level]

    if is_foreground:
        console_level = _level(configured if configured is not None else "info")
        if console_level is not None:
            console = logging.StreamHandler(sys.stdout)
            console.setLevel(console_level)
            console.setFormatter(formatter)
            root.addHandler(console)
            levels.append(console_level)
    root.setLevel(min(levels))


def _mount(args: CliArgs, mounter: _Mounter) -> _Session:
    session = mounter(_mount_settings(args))
    logger.info("successfully mounted %s", args.mount_point)
    return session


def _run_background_child(args: CliArgs, mounter: _Mounter, write_fd: int) -> int:
    with os.fdopen(write_fd, "wb", buffering=0) as pipe:
        _init_logging(args.foreground, args.log_directory)
        with MetricsSink.init():
            try:
                session = _mount(args, mounter)
            except Exception:
                pipe.write(b"1")
                raise
            pipe.write(b"0")
            pipe.close()
            session.join()
    return 0


def _wait_for_child(pid: int, read_fd: int) -> None:
    statuses: queue.Queue[bytes] = queue.Queue()

    def reader() -> None:
        with os.fdopen(read_fd, "rb", buffering=0) as pipe:
            try:
                data = pipe.read(1)
            except OSError:
                data = b""
        statuses.put(data if data else b"1")

    threading.Thread(target=reader, daemon=True).start()
    try:
        status = statuses.get(timeout=MOUNT_READY_TIMEOUT)
    except queue.Empty:
        try:
            os.kill(pid, signal.SIGTERM)
        except OSError as exc:
            logger.error("Unable to kill hanging child process with SIGTERM: %r", exc)
        raise CliError(
            f"Timeout after {MOUNT_READY_TIMEOUT} seconds while waiting for mount process to be ready"
        ) from None

    if status == b"0":
        logger.debug("success status flag received from child process")
        return
    try:
        os.waitpid(pid, 0)
    except OSError as exc:
        raise CliError(f"Failed to wait for child process to exit: {exc}") from exc
    raise CliError("Failed to create mount process")


def _run(args: CliArgs, mounter: _Mounter) -> int:
    if args.foreground:
        _init_logging(args.foreground, args.log_directory)
        with MetricsSink.init():
            session = _mount(args, mounter)
            session.join()
        return 0

    read_fd, write_fd = os.pipe()
    pid = os.fork()
    if pid == 0:
        os.close(read_fd)
        status = 1
        try:
            status = _run_background_child(args, mounter, write_fd)
        except BaseException as exc:  # the child must never return into the caller
            logger.error("mount process failed: %s", exc)
            print(f"Error: {exc}", file=sys.stderr)
        finally:
            os._exit(status)

    os.close(write_fd)
    _init_logging(args.foreground, args.log_directory)
    _wait_for_child(pid, read_fd)
    return 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Run the mount command; return the process exit status."""
    args = parse_args(argv)
    try:
        validate_mount_point(args.mount_point)
        return _run(args, _no_backend)
    except CliError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())