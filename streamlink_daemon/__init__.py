"""Stream daemon settings, framed TCP packet protocol, worker threads and control/video server."""

__version__ = "1.0.0"