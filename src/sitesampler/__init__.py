"""sitesampler - sampled website crawling pipeline."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("sitesampler")
except PackageNotFoundError:
    __version__ = "dev"
