import pytest

from rootlesskit.mountinfo import (
    MountInfo,
    fstype_filter,
    get_mounts,
    parse_mountinfo,
    single_entry_filter,
)

SAMPLE = "36 35 98:0 /mnt1 /mnt2 rw,noatime master:1 - ext3 /dev/root rw,errors=continue"

TABLE = "\n".join(
    [
        "1 0 8:1 / / rw,relatime shared:1 - ext4 /dev/sda1 rw",
        "2 1 0:26 / /sys/fs/cgroup rw,nosuid shared:4 - cgroup2 cgroup2 rw",
        "3 1 0:5 / /dev rw,nosuid shared:2 - devtmpfs udev rw",
        "4 1 8:1 / / rw,relatime master:7 - ext4 /dev/sda1 rw",
    ]
) + "\n"


def test_parse_documented_example():
    (info,) = parse_mountinfo(SAMPLE)
    assert info == MountInfo(
        id=36,
        parent=35,
        major=98,
        minor=0,
        root="/mnt1",
        mountpoint="/mnt2",
        options="rw,noatime",
        optional="master:1",
        fstype="ext3",
        source="/dev/root",
        vfs_options="rw,errors=continue",
    )


def test_parse_without_optional_fields():
    (info,) = parse_mountinfo("5 1 0:3 / /proc rw - proc proc rw")
    assert info.optional == ""
    assert info.fstype == "proc"
    assert info.mountpoint == "/proc"


def test_parse_unescapes_octal():
    (info,) = parse_mountinfo(r"5 1 0:3 / /a\040b rw - tmpfs tmpfs rw")
    assert info.mountpoint == "/a b"


def test_parse_missing_separator():
    with pytest.raises(ValueError, match="missing separator"):
        parse_mountinfo("36 35 98:0 /mnt1 /mnt2 rw,noatime master:1 ext3 /dev/root rw")


def test_parse_bad_number():
    with pytest.raises(ValueError):
        parse_mountinfo("x 35 98:0 /mnt1 /mnt2 rw - ext3 /dev/root rw")


def test_fstype_filter():
    f = fstype_filter("cgroup2")
    cgroup, ext = parse_mountinfo(TABLE)[1], parse_mountinfo(TABLE)[0]
    assert f(cgroup) == (False, False)
    assert f(ext) == (True, False)


def test_single_entry_filter_stops_at_first(tmp_path):
    path = tmp_path / "mountinfo"
    path.write_text(TABLE)
    mounts = get_mounts(single_entry_filter("/"), path)
    assert len(mounts) == 1
    assert mounts[0].optional == "shared:1"


def test_get_mounts_fstype(tmp_path):
    path = tmp_path / "mountinfo"
    path.write_text(TABLE)
    mounts = get_mounts(fstype_filter("cgroup2"), path)
    assert [m.mountpoint for m in mounts] == ["/sys/fs/cgroup"]


def test_get_mounts_without_filter(tmp_path):
    path = tmp_path / "mountinfo"
    path.write_text(TABLE)
    assert len(get_mounts(None, path)) == 4


def test_get_mounts_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        get_mounts(None, tmp_path / "absent")