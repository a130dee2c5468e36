"""Image retrieval and comparison gateway for the QC tracking app."""

__version__ = "1.0.0"
