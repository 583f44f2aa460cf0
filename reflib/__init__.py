"""Personal research-library manager: references, collections, PDFs and metadata enrichment."""

__version__ = "0.1.0"
