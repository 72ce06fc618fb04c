"""Archive and digest helpers."""

from .archive import (
    PackageArchive,
    build_archive,
    extract_bundle,
    sha256_base64,
)

__all__ = [
    "PackageArchive",
    "build_archive",
    "extract_bundle",
    "sha256_base64",
]
