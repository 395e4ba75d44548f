import sys

__version__ = "0.1.0"
PYTHON_VERSION = f"{sys.version_info.major}.{sys.version_info.minor}"
