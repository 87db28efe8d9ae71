"""
Populates module directories from tar streams and cached module trees.

All methods block and are meant to run in a worker thread.
"""

import os
import shutil
import stat
import tarfile
from pathlib import Path
from typing import BinaryIO, Optional

from ..core.filter import SkiplistFilter
from ..infrastructure.error_handler import MaterializationError
from ..infrastructure.logger import logger


COPY_BUFFER = 1024 * 1024


def purge_path(path: Path) -> None:
    """Remove a file, symlink or directory tree; a missing path is fine."""

    path = Path(path)
    try:
        if path.is_symlink() or path.is_file():
            path.unlink()
        elif path.is_dir():
            shutil.rmtree(path)
    except FileNotFoundError:
        pass
    except OSError as e:
        raise MaterializationError(f"Error while deleting {path}", e)


def create_or_purge_dir(path: Path) -> Path:
    path = Path(path)
    if path.exists() or path.is_symlink():
        logger.debug(f"Trying to remove {path}")
        purge_path(path)
    path.mkdir(parents=True, exist_ok=True)
    return path


def _within(base: Path, candidate: Path) -> bool:
    try:
        candidate.relative_to(base)
    except ValueError:
        return False
    return True


def _replace(target: Path) -> None:
    if target.is_symlink() or target.is_file():
        target.unlink()
    elif target.is_dir():
        shutil.rmtree(target)


class Materializer:
    """
    Writes module trees to disk.

    Args:
        skiplist: Paths, relative to a module root, that never reach a target
        use_hardlinks: Hardlink cached files into targets; copy when disabled
    """

    def __init__(self, skiplist: Optional[SkiplistFilter] = None, use_hardlinks: bool = True):
        self.skiplist = skiplist or SkiplistFilter()
        self.use_hardlinks = use_hardlinks

    ####
    ##      TAR EXTRACTION
    #####
    def extract(self, stream: BinaryIO, target_dir: Path, strip_components: int = 0) -> int:
        """
        Extract a tar (optionally compressed) stream below ``target_dir``.

        Args:
            stream: Readable binary stream, read sequentially
            target_dir: Extraction root
            strip_components: Leading path parts ignored when matching the skiplist

        Returns:
            Number of entries written

        Raises:
            MaterializationError: Unsupported member type, a member escaping
                the target, or any filesystem error
        """
        target_dir = Path(target_dir).resolve()
        target_dir.mkdir(parents=True, exist_ok=True)
        written = 0

        try:
            with tarfile.open(fileobj=stream, mode="r|*") as archive:
                for member in archive:
                    if member.type in (tarfile.XHDTYPE, tarfile.XGLTYPE):
                        continue

                    relative = Path(*Path(member.name).parts[strip_components:]) if member.name else Path()
                    if str(relative) not in ("", ".") and self.skiplist.is_skipped(relative.as_posix()):
                        logger.debug(f"Skipping {member.name} because it matches the skiplist")
                        continue

                    destination = Path(os.path.normpath(target_dir / member.name))
                    if destination == target_dir:
                        continue
                    # a previously extracted symlink must not redirect later members
                    if not _within(target_dir, destination) or \
                            not _within(target_dir, destination.parent.resolve()):
                        raise MaterializationError(f"Archive member {member.name} escapes {target_dir}")

                    self._extract_member(archive, member, target_dir, destination)
                    written += 1
        except tarfile.TarError as e:
            raise MaterializationError(f"Error while extracting archive into {target_dir}", e)
        except OSError as e:
            raise MaterializationError(f"Error while extracting archive into {target_dir}", e)
        finally:
            drain = getattr(stream, "drain", None)
            if drain is not None:
                discarded = drain()
                if discarded:
                    logger.debug(f"Discarded {discarded} trailing bytes after extracting into {target_dir}")

        return written

    def _extract_member(self, archive: tarfile.TarFile, member: tarfile.TarInfo,
                        target_dir: Path, destination: Path) -> None:
        if member.isdir():
            destination.mkdir(parents=True, exist_ok=True)
            # the owner keeps full access so later members land and purges succeed
            os.chmod(destination, (member.mode & 0o7777) | stat.S_IRWXU)
            return

        destination.parent.mkdir(parents=True, exist_ok=True)

        if member.isreg():
            if destination.is_symlink() or destination.is_dir():
                _replace(destination)
            source = archive.extractfile(member)
            with open(destination, "wb") as out:
                shutil.copyfileobj(source, out, COPY_BUFFER)
            os.chmod(destination, member.mode & 0o7777)
            os.utime(destination, (member.mtime, member.mtime))

        elif member.issym():
            if destination.is_symlink() and os.readlink(destination) == member.linkname:
                return
            if destination.exists() or destination.is_symlink():
                _replace(destination)
            os.symlink(member.linkname, destination)

        elif member.islnk():
            link_source = (target_dir / member.linkname).resolve()
            if not _within(target_dir, link_source):
                raise MaterializationError(f"Hardlink {member.name} points outside of {target_dir}")
            if destination.exists() or destination.is_symlink():
                if destination.exists() and os.path.samefile(destination, link_source):
                    return
                _replace(destination)
            os.link(link_source, destination)

        else:
            raise MaterializationError(f"Unable to untar type {member.type!r} in file {member.name}")

    ####
    ##      POPULATION
    #####
    def check_same_device(self, source_dir: Path, target_dir: Path) -> None:
        """Hardlinking requires the cache and the target on one device."""

        if not self.use_hardlinks:
            return
        probe = Path(target_dir)
        while not probe.exists():
            probe = probe.parent
        if os.stat(source_dir).st_dev != os.stat(probe).st_dev:
            raise MaterializationError(
                "Can't hardlink module files over different devices. Please consider "
                f"changing the cachedir setting or using copy mode. Cache dir: {source_dir} "
                f"target dir: {target_dir}"
            )

    def populate(self, source_dir: Path, target_dir: Path) -> int:
        """
        Mirror ``source_dir`` into ``target_dir`` by hardlinking or copying files.

        Returns:
            Number of files and links created
        """
        source_dir = Path(source_dir).resolve()
        target_dir = Path(target_dir)
        if not source_dir.is_dir():
            raise MaterializationError(f"Module source not found in dir: {source_dir}")

        self.check_same_device(source_dir, target_dir)
        target_dir.mkdir(parents=True, exist_ok=True)
        created = 0

        try:
            for root, dirnames, filenames in os.walk(source_dir):
                relative_root = Path(root).relative_to(source_dir)

                for dirname in list(dirnames):
                    relative = relative_root / dirname
                    if self.skiplist.is_skipped(relative.as_posix()):
                        dirnames.remove(dirname)
                        continue
                    source = Path(root) / dirname
                    if source.is_symlink():
                        dirnames.remove(dirname)
                        self._link_symlink(source, target_dir / relative)
                        created += 1
                    else:
                        (target_dir / relative).mkdir(exist_ok=True)

                for filename in filenames:
                    relative = relative_root / filename
                    if self.skiplist.is_skipped(relative.as_posix()):
                        continue
                    source = Path(root) / filename
                    destination = target_dir / relative
                    if source.is_symlink():
                        self._link_symlink(source, destination)
                    else:
                        if destination.exists() or destination.is_symlink():
                            _replace(destination)
                        if self.use_hardlinks:
                            os.link(source, destination)
                        else:
                            shutil.copy2(source, destination)
                    created += 1
        except OSError as e:
            raise MaterializationError(f"Failed to populate {target_dir} from {source_dir}", e)

        return created

    @staticmethod
    def _link_symlink(source: Path, destination: Path) -> None:
        link = os.readlink(source)
        if destination.is_symlink() and os.readlink(destination) == link:
            return
        if destination.exists() or destination.is_symlink():
            _replace(destination)
        os.symlink(link, destination)


__all__ = ["Materializer", "create_or_purge_dir", "purge_path"]
