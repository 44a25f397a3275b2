"""Zone processing workflow for urban-climate indicators on PostGIS."""

__version__ = "0.1.0"
