"""appdrop: mobile build distribution backend"""

__version__ = "0.1.0"
