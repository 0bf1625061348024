"""Check, dump and extract EROFS filesystem images through a pluggable image reader."""

__version__ = "0.1.0"