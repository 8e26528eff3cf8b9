import os
import re
from pathlib import Path

import pytest

from s3mount.cli import (
    AddressingStyle,
    CliArgs,
    CliError,
    _mount_settings,
    build_parser,
    main,
    parse_args,
    parse_perm_bits,
    validate_mount_point,
)

VALID_VERSION_OUTPUT_PATTERN = r"^mountpoint-s3 \d+\.\d+\.\d+(?:-\w+(?:\.\w+)*)*(?:\+[\w\.]+)*\n$"


def test_mount_point_doesnt_exist(tmp_path, capsys):
    missing = tmp_path / "test" / "dir"
    assert main(["test-bucket", str(missing)]) == 1
    err = capsys.readouterr().err
    assert f"Mount point {missing} does not exist or it is not a directory" in err


def test_mount_point_isnt_dir(tmp_path, capsys):
    file_path = tmp_path / "file.txt"
    file_path.write_text("x")
    assert main(["test-bucket", str(file_path)]) == 1
    err = capsys.readouterr().err
    assert f"Mount point {file_path} does not exist or it is not a directory" in err


def _expect_usage_error(argv, capsys, message):
    with pytest.raises(SystemExit) as excinfo:
        parse_args(argv)
    assert excinfo.value.code == 2
    assert message in capsys.readouterr().err


def test_max_dir_mode_exceeded(tmp_path, capsys):
    _expect_usage_error(
        ["test-bucket", str(tmp_path), "--dir-mode=7755"],
        capsys,
        "'--dir-mode <DIR_MODE>': only user/group/other permissions are supported",
    )


def test_invalid_dir_mode(tmp_path, capsys):
    _expect_usage_error(
        ["test-bucket", str(tmp_path), "--dir-mode=800"],
        capsys,
        "'--dir-mode <DIR_MODE>': must be a valid octal number",
    )


def test_max_file_mode_exceeded(tmp_path, capsys):
    _expect_usage_error(
        ["test-bucket", str(tmp_path), "--file-mode=7644"],
        capsys,
        "'--file-mode <FILE_MODE>': only user/group/other permissions are supported",
    )


def test_invalid_file_mode(tmp_path, capsys):
    _expect_usage_error(
        ["test-bucket", str(tmp_path), "--file-mode=900"],
        capsys,
        "'--file-mode <FILE_MODE>': must be a valid octal number",
    )


def test_main_reports_bad_mode_before_mount_point(capsys):
    with pytest.raises(SystemExit) as excinfo:
        main(["test-bucket", "test/dir", "--dir-mode=800"])
    assert excinfo.value.code == 2
    assert "must be a valid octal number" in capsys.readouterr().err


@pytest.mark.parametrize("flag", ["--version", "-V"])
def test_print_version(flag, capsys):
    with pytest.raises(SystemExit) as excinfo:
        parse_args([flag])
    assert excinfo.value.code == 0
    assert re.match(VALID_VERSION_OUTPUT_PATTERN, capsys.readouterr().out)


def test_addressing_style_mutually_exclusive(capsys):
    _expect_usage_error(
        ["test-bucket", "test/dir", "--virtual-addressing", "--path-addressing"],
        capsys,
        "The argument '--virtual-addressing' cannot be used with '--path-addressing'",
    )


@pytest.mark.parametrize(
    "text, expected",
    [("755", 0o755), ("644", 0o644), ("0", 0), ("777", 0o777), ("0777", 0o777)],
)
def test_parse_perm_bits_valid(text, expected):
    assert parse_perm_bits(text) == expected


@pytest.mark.parametrize(
    "text, message",
    [
        ("800", "must be a valid octal number"),
        ("abc", "must be a valid octal number"),
        ("", "must be a valid octal number"),
        ("1000", "only user/group/other permissions are supported"),
        ("7755", "only user/group/other permissions are supported"),
    ],
)
def test_parse_perm_bits_invalid(text, message):
    with pytest.raises(ValueError, match=message):
        parse_perm_bits(text)


def test_parse_args_defaults():
    args = parse_args(["bucket", "/mnt/point"])
    assert args.bucket_name == "bucket"
    assert args.mount_point == Path("/mnt/point")
    assert args.foreground is False
    assert args.dir_mode is None
    assert args.addressing_style() is AddressingStyle.AUTOMATIC


def test_parse_args_converts_values():
    args = parse_args(
        [
            "bucket",
            "/mnt/point",
            "--dir-mode=700",
            "--file-mode",
            "600",
            "--uid=1000",
            "--thread-count=4",
            "--part-size=8388608",
            "-f",
            "-l",
            "/tmp/logs",
        ]
    )
    assert args.dir_mode == 0o700
    assert args.file_mode == 0o600
    assert args.uid == 1000
    assert args.thread_count == 4
    assert args.part_size == 8388608
    assert args.foreground is True
    assert args.log_directory == Path("/tmp/logs")


def test_uid_must_be_positive(capsys):
    _expect_usage_error(
        ["bucket", "/mnt", "--uid=0"],
        capsys,
        "'--uid <UID>': 0 is not in 1..=4294967295",
    )


def test_thread_count_rejects_text(capsys):
    _expect_usage_error(
        ["bucket", "/mnt", "--thread-count=many"],
        capsys,
        "'--thread-count <N>'",
    )


@pytest.mark.parametrize(
    "virtual, path, expected",
    [
        (True, False, AddressingStyle.VIRTUAL),
        (False, True, AddressingStyle.PATH),
        (False, False, AddressingStyle.AUTOMATIC),
    ],
)
def test_addressing_style(virtual, path, expected):
    args = CliArgs("bucket", Path("/mnt"), virtual_addressing=virtual, path_addressing=path)
    assert args.addressing_style() is expected


def test_validate_mount_point(tmp_path):
    assert validate_mount_point(tmp_path) == tmp_path
    with pytest.raises(CliError, match="does not exist or it is not a directory"):
        validate_mount_point(tmp_path / "missing")


def test_build_parser_requires_positionals(capsys):
    parser = build_parser()
    with pytest.raises(SystemExit) as excinfo:
        parser.parse_args([])
    assert excinfo.value.code == 2
    assert "bucket_name" in capsys.readouterr().err


def test_mount_settings_defaults():
    settings = _mount_settings(CliArgs("bucket", Path("/mnt")))
    assert settings.options == ("ro", "default_permissions", "fsname=mountpoint-s3", "noatime")
    assert settings.dir_mode == 0o755
    assert settings.file_mode == 0o644
    assert settings.uid == os.getuid()
    assert settings.gid == os.getgid()
    assert settings.region == "us-east-1"
    assert settings.region_specified is False
    assert settings.prefix == ""
    assert settings.thread_count == 1


def test_mount_settings_options_and_overrides():
    args = CliArgs(
        "bucket",
        Path("/mnt"),
        prefix="data/",
        region="eu-west-1",
        auto_unmount=True,
        allow_root=True,
        allow_other=True,
        throughput_target_gbps=10,
        uid=1234,
        dir_mode=0o700,
    )
    settings = _mount_settings(args)
    assert settings.options[-3:] == ("auto_unmount", "allow_root", "allow_other")
    assert settings.throughput_target_gbps == 10.0
    assert settings.uid == 1234
    assert settings.dir_mode == 0o700
    assert settings.region == "eu-west-1"
    assert settings.region_specified is True
    assert settings.prefix == "data/"


def test_mount_settings_rejects_bad_endpoint():
    with pytest.raises(CliError, match="Failed to parse endpoint URL"):
        _mount_settings(CliArgs("bucket", Path("/mnt"), endpoint_url="not a url"))