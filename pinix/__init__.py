"""pinix: pinned sources, content-addressed builds, composed environments."""

__version__ = "0.1.0"
