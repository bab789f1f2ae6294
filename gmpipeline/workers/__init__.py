"""
GM Pipeline Workers
Worker process host and command line entry point
"""

from .host import WorkerHost, load_wiring, main

__all__ = ["WorkerHost", "load_wiring", "main"]
