"""Deterministic release archives.

This module handles:
- Writing tar.gz and zip archives whose bytes depend only on the tree
  contents and a fixed timestamp
- Hashing archives and their members
- Comparing two archives member by member

Entries are sorted, owners are zeroed, permissions are normalized and every
timestamp (including the gzip header) is the commit time.
"""

from __future__ import annotations

import gzip
import hashlib
import logging
import os
import stat
import tarfile
import time
import zipfile
from pathlib import Path

from reprobuild.cache.fingerprint import hash_file
from reprobuild.types import ArchiveKind

logger = logging.getLogger(__name__)

# Earliest time representable in a zip entry (1980-01-01T00:00:00Z)
ZIP_EPOCH = 315532800

GZIP_LEVEL = 9


def archive_filename(root_name: str, kind: ArchiveKind) -> str:
    """File name of the archive for a top-level directory."""
    return f"{root_name}.{kind.value}"


def iter_tree(root: Path) -> list[str]:
    """All entries under ``root`` as sorted POSIX relative paths.

    Symlinks are listed but never followed.
    """
    entries: list[str] = []
    for dirpath, dirnames, filenames in os.walk(root):
        base = Path(dirpath)
        for name in [*dirnames, *filenames]:
            entries.append((base / name).relative_to(root).as_posix())
    return sorted(entries)


def _normalized_mode(path: Path) -> int:
    st = path.lstat()
    if stat.S_ISLNK(st.st_mode):
        return 0o777
    if stat.S_ISDIR(st.st_mode) or st.st_mode & 0o111:
        return 0o755
    return 0o644


def _tar_info(path: Path, arcname: str, mtime: int) -> tarfile.TarInfo:
    info = tarfile.TarInfo(arcname)
    info.mtime = mtime
    info.uid = info.gid = 0
    info.uname = info.gname = ""
    info.mode = _normalized_mode(path)
    if path.is_symlink():
        info.type = tarfile.SYMTYPE
        info.linkname = os.readlink(path)
    elif path.is_dir():
        info.type = tarfile.DIRTYPE
    else:
        info.type = tarfile.REGTYPE
        info.size = path.stat().st_size
    return info


def _write_tar_gz(source_dir: Path, root_name: str, dest: Path, mtime: int) -> None:
    with dest.open("wb") as raw:
        # Empty filename keeps the temp file name out of the gzip header
        with gzip.GzipFile(
            filename="", mode="wb", compresslevel=GZIP_LEVEL, fileobj=raw, mtime=mtime
        ) as gz:
            with tarfile.open(fileobj=gz, mode="w", format=tarfile.GNU_FORMAT) as tar:
                tar.addfile(_tar_info(source_dir, root_name, mtime))
                for rel in iter_tree(source_dir):
                    path = source_dir / rel
                    info = _tar_info(path, f"{root_name}/{rel}", mtime)
                    if info.isreg():
                        with path.open("rb") as f:
                            tar.addfile(info, f)
                    else:
                        tar.addfile(info)


def _zip_info(arcname: str, mode: int, file_type: int, mtime: int) -> zipfile.ZipInfo:
    date_time = time.gmtime(max(mtime, ZIP_EPOCH))[:6]
    info = zipfile.ZipInfo(arcname, date_time=date_time)
    info.create_system = 3
    info.external_attr = (file_type | mode) << 16
    info.compress_type = zipfile.ZIP_DEFLATED
    return info


def _write_zip(source_dir: Path, root_name: str, dest: Path, mtime: int) -> None:
    with zipfile.ZipFile(dest, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        root_info = _zip_info(f"{root_name}/", 0o755, stat.S_IFDIR, mtime)
        root_info.compress_type = zipfile.ZIP_STORED
        zf.writestr(root_info, b"")
        for rel in iter_tree(source_dir):
            path = source_dir / rel
            mode = _normalized_mode(path)
            arcname = f"{root_name}/{rel}"
            if path.is_symlink():
                info = _zip_info(arcname, mode, stat.S_IFLNK, mtime)
                zf.writestr(info, os.readlink(path).encode("utf-8"))
            elif path.is_dir():
                info = _zip_info(f"{arcname}/", mode, stat.S_IFDIR, mtime)
                info.compress_type = zipfile.ZIP_STORED
                zf.writestr(info, b"")
            else:
                info = _zip_info(arcname, mode, stat.S_IFREG, mtime)
                zf.writestr(info, path.read_bytes())


def create_archive(
    source_dir: Path,
    dest_dir: Path,
    kind: ArchiveKind,
    mtime: int,
    root_name: str | None = None,
) -> Path:
    """Package ``source_dir`` as a single-root archive.

    The archive is written to a temporary file and renamed into place, so a
    failed or aborted write never leaves a partial archive at the final path.

    Args:
        source_dir: Directory to package.
        dest_dir: Directory receiving the archive.
        kind: Archive format.
        mtime: Timestamp applied to every entry.
        root_name: Top-level directory name (defaults to source_dir's name).

    Returns:
        Path to the archive.

    Raises:
        OSError: If the tree cannot be read or the archive cannot be written.
    """
    root_name = root_name or source_dir.name
    dest_dir.mkdir(parents=True, exist_ok=True)
    dest = dest_dir / archive_filename(root_name, kind)
    tmp = dest_dir / f".{dest.name}.partial"

    try:
        if kind == ArchiveKind.ZIP:
            _write_zip(source_dir, root_name, tmp, mtime)
        else:
            _write_tar_gz(source_dir, root_name, tmp, mtime)
        os.replace(tmp, dest)
    finally:
        if tmp.exists():
            tmp.unlink()

    logger.info("Created archive %s", dest)
    return dest


def hash_archive(path: Path) -> str:
    """SHA-256 hex digest of an archive file."""
    return hash_file(path)


def member_hashes(path: Path) -> dict[str, str]:
    """Map of member name to SHA-256 of its content (or link target).

    Directories map to an empty string.
    """
    members: dict[str, str] = {}
    if path.name.endswith(".zip"):
        with zipfile.ZipFile(path) as zf:
            for info in zf.infolist():
                if info.is_dir():
                    members[info.filename.rstrip("/")] = ""
                else:
                    members[info.filename] = hashlib.sha256(zf.read(info)).hexdigest()
        return members

    with tarfile.open(path, mode="r:gz") as tar:
        for member in tar.getmembers():
            if member.isdir():
                members[member.name] = ""
            elif member.issym() or member.islnk():
                members[member.name] = hashlib.sha256(
                    member.linkname.encode("utf-8")
                ).hexdigest()
            else:
                extracted = tar.extractfile(member)
                data = extracted.read() if extracted is not None else b""
                members[member.name] = hashlib.sha256(data).hexdigest()
    return members


def diff_archives(first: Path, second: Path) -> list[str]:
    """Names of members whose content differs or exist in only one archive.

    Two archives can hash differently with no differing member when only
    metadata (ordering, timestamps, owners) differs; the result is then
    empty.
    """
    a = member_hashes(first)
    b = member_hashes(second)
    return sorted(name for name in a.keys() | b.keys() if a.get(name) != b.get(name))


def top_level_dirs(path: Path) -> set[str]:
    """Top-level directory names contained in an archive."""
    if path.name.endswith(".zip"):
        with zipfile.ZipFile(path) as zf:
            names = zf.namelist()
    else:
        with tarfile.open(path, mode="r:gz") as tar:
            names = tar.getnames()
    return {name.split("/", 1)[0] for name in names if name}


def read_member(path: Path, name: str) -> bytes:
    """Content of a single archive member."""
    if path.name.endswith(".zip"):
        with zipfile.ZipFile(path) as zf:
            return zf.read(name)
    with tarfile.open(path, mode="r:gz") as tar:
        extracted = tar.extractfile(name)
        if extracted is None:
            raise KeyError(name)
        return extracted.read()


__all__ = [
    "archive_filename",
    "create_archive",
    "diff_archives",
    "hash_archive",
    "iter_tree",
    "member_hashes",
    "read_member",
    "top_level_dirs",
]
