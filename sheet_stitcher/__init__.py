"""sheet-stitcher: reconcile AI-proposed schemas and corrections onto a CSV."""

__version__ = "0.1.0"
