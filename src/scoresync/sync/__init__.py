"""
Score sync -- gets locally recorded scores to the server.

Scores are written to the local store first and uploaded in bounded
batches whenever the device is online and holds a valid credential.
The store stays authoritative; the server is a copy.
"""

from .engine import SyncEngine
from .store import ScoreStore, SqliteScoreStore

__all__ = ["ScoreStore", "SqliteScoreStore", "SyncEngine"]
