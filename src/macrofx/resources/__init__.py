"""Reusable resource helpers for lease openers."""

from macrofx.resources.fs import FsHost, temp_dir_opener
from macrofx.resources.pool import ResourcePool

__all__ = ["FsHost", "temp_dir_opener", "ResourcePool"]
