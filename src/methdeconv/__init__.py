# methdeconv: marker discovery and deconvolution of mixed methylation samples

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("methdeconv")
except PackageNotFoundError:
    __version__ = "0.1.0.dev"
