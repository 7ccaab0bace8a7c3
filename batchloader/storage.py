"""
Storage abstraction layer for the batch loader.

Provides a unified interface for the file operations a run needs, for both
a local filesystem source and Google Cloud Storage.

Files are addressed by their identifier: the path relative to the source
root, always with "/" separators. The first segment of a nested identifier
names the target schema.

The Protocol pattern allows the load executor to work with either source
without knowing the implementation details.
"""

import shutil
from pathlib import Path
from typing import Protocol

import structlog

log = structlog.get_logger()


class Storage(Protocol):
    """
    Protocol defining the file source interface.

    - list_files: Enumerate candidate identifiers under the source root
    - exists: Check whether an identifier is present (run gate)
    - location: Full path/URI for an identifier
    - move: Move an identifier to a destination root, keeping its relative path
    """

    profile: str

    def list_files(self) -> list[str]:
        """List identifiers under the source root, in listing order."""
        ...

    def exists(self, identifier: str) -> bool:
        """Return True if the identifier is present in the source."""
        ...

    def location(self, identifier: str) -> str:
        """Return the full path or URI for an identifier."""
        ...

    def move(self, identifier: str, destination_root: str) -> str:
        """Move an identifier under destination_root and return the new location."""
        ...


class LocalStorage:
    """
    Local filesystem source.

    Listing is bounded to direct children of the root and one nesting
    level (root/<schema>/<file>).
    """

    profile = "local"

    def __init__(self, root: str) -> None:
        self.root = Path(root)

    def list_files(self) -> list[str]:
        """
        List files up to one directory below the root.

        Returns:
            Identifiers relative to the root, e.g. "orders.csv" or "sales/orders.csv"
        """
        identifiers = []

        for entry in sorted(self.root.iterdir()):
            if entry.is_file():
                identifiers.append(entry.name)
            elif entry.is_dir():
                identifiers.extend(
                    f"{entry.name}/{child.name}"
                    for child in sorted(entry.iterdir())
                    if child.is_file()
                )

        return identifiers

    def exists(self, identifier: str) -> bool:
        return (self.root / identifier).exists()

    def location(self, identifier: str) -> str:
        return str(self.root / identifier)

    def move(self, identifier: str, destination_root: str) -> str:
        """
        Move a file under destination_root, creating directories as needed.

        shutil.move falls back to copy and delete when the destination is on
        another filesystem.

        Args:
            identifier: Relative identifier of the source file
            destination_root: Directory the file is moved into

        Returns:
            The destination path as a string
        """
        dst_path = Path(destination_root) / identifier
        dst_path.parent.mkdir(parents=True, exist_ok=True)
        shutil.move(str(self.root / identifier), str(dst_path))
        return str(dst_path)


class GCSStorage:
    """
    Google Cloud Storage source.

    Listing is a flat recursive enumeration of every blob under the
    prefix. GCS uploads are atomic, so listed objects are always complete.
    """

    profile = "gcs"

    def __init__(self, root: str, client=None) -> None:
        """
        Initialise the GCS client.

        Uses Application Default Credentials unless a client is supplied.
        """
        if client is None:
            from google.cloud import storage
            client = storage.Client()
        self.client = client
        self.bucket_name, self.prefix = parse_gcs_path(root)
        self.bucket = self.client.bucket(self.bucket_name)

    def _key(self, identifier: str) -> str:
        return f"{self.prefix}/{identifier}" if self.prefix else identifier

    def list_files(self) -> list[str]:
        prefix = f"{self.prefix}/" if self.prefix else ""
        identifiers = []

        for blob in self.client.list_blobs(self.bucket_name, prefix=prefix):
            # Skip directory placeholder objects
            if blob.name.endswith("/"):
                continue
            identifiers.append(blob.name[len(prefix):])

        return identifiers

    def exists(self, identifier: str) -> bool:
        return self.bucket.blob(self._key(identifier)).exists()

    def location(self, identifier: str) -> str:
        return f"gs://{self.bucket_name}/{self._key(identifier)}"

    def move(self, identifier: str, destination_root: str) -> str:
        """
        Move a blob under destination_root.

        GCS has no native move, so this copies the blob to the new
        location then deletes the original.
        """
        dst_bucket_name, dst_prefix = parse_gcs_path(destination_root)
        dst_key = f"{dst_prefix}/{identifier}" if dst_prefix else identifier

        src_blob = self.bucket.blob(self._key(identifier))
        self.bucket.copy_blob(src_blob, self.client.bucket(dst_bucket_name), dst_key)
        src_blob.delete()

        return f"gs://{dst_bucket_name}/{dst_key}"


def parse_gcs_path(path: str) -> tuple[str, str]:
    """
    Parse a gs:// URI into bucket and prefix.

    Example:
        "gs://my-bucket/data/landing/" -> ("my-bucket", "data/landing")
    """
    path = path.removeprefix("gs://")
    bucket, _, prefix = path.partition("/")
    return bucket, prefix.strip("/")


def create_storage(profile: str, root: str) -> Storage:
    """Build the storage implementation for a source profile."""
    if profile == "gcs":
        return GCSStorage(root)
    return LocalStorage(root)


def filter_candidates(
    identifiers: list[str],
    extension: str,
    exclude_pattern: str | None = None,
    ignore_dirs: tuple[str, ...] = (),
) -> list[str]:
    """
    Keep identifiers eligible for loading, preserving order.

    An identifier is dropped when it does not end with the extension,
    contains the exclude substring, or its first path segment is in the
    ignore list.
    """
    candidates = []
    for identifier in identifiers:
        if not identifier.endswith(extension):
            continue
        if exclude_pattern and exclude_pattern in identifier:
            continue
        if "/" in identifier and identifier.split("/", 1)[0] in ignore_dirs:
            continue
        candidates.append(identifier)
    return candidates


def enumerate_sources(
    storage: Storage,
    extension: str,
    exclude_pattern: str | None = None,
    ignore_dirs: tuple[str, ...] = (),
) -> list[str]:
    """List and filter the source files for a run."""
    identifiers = storage.list_files()
    candidates = filter_candidates(identifiers, extension, exclude_pattern, ignore_dirs)

    log.info(
        "sources_enumerated",
        profile=storage.profile,
        listed=len(identifiers),
        candidates=len(candidates),
    )
    return candidates


def gate_open(storage: Storage, signal_name: str | None) -> bool:
    """
    Check the run gate.

    With no signal configured the gate is always open; otherwise the run
    may only start when the signal artifact is present in the source.
    """
    if not signal_name:
        return True

    present = storage.exists(signal_name)
    log.info("gate_checked", signal=signal_name, present=present, profile=storage.profile)
    return present
