"""Resource types, file metadata, objects, packfiles and packers for a content-addressed backup repository."""

__version__ = "0.1.0"