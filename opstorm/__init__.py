"""Volume operations storm: drive many volumes through provision, attach,
detach and delete against one storage backend and verify every transition."""

__version__ = "0.1.0"
