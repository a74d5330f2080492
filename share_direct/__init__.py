"""Upload a local file to an Azure Files share in fixed-size ranges."""

__version__ = "0.1.0"
