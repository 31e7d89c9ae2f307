"""
scoresync — offline-first score synchronization client.

Scores are recorded locally and never wait on the network.
A single-flight sync engine uploads them to the central server
whenever the device is online and holds a valid device-bound token.
"""

import os

__version__ = "0.1.0"

SCORESYNC_HOME = os.environ.get("SCORESYNC_HOME", "~/.scoresync")
