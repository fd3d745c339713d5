"""
Risu — local-first notes with end-to-end encrypted sync.

Notes live in a local SQLite store. When an account is linked, a
background reconciler exchanges ciphertext with the remote service;
the key that opens it is derived from a passphrase and never leaves
the device.
"""

import os

__version__ = "0.4.0"

RISU_HOME = os.environ.get("RISU_HOME", "~/.risu")
