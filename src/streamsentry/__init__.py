"""StreamSentry - topology and metrics exporter for stream-processing instances"""

__version__ = "0.3.0"
