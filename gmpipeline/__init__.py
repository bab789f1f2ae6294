"""
GM Pipeline
Asynchronous event pipeline for the game-master service: broker messaging,
document ingestion and conversation post-processing workers
"""

__version__ = "0.1.0"

from . import messaging, pipeline, utils, vectors

__all__ = ["messaging", "pipeline", "utils", "vectors"]
