"""
Petbook -- OpenClaw device daemon.

Keeps a local OpenClaw installation in step with its device document
in the cloud, runs remote commands, and relays dashboard chat through
the local gateway. One device, one pet.
"""

import os

__version__ = "0.4.0"
__author__ = "ohmypetbook"

PETBOOK_HOME = os.environ.get("PETBOOK_HOME", "~/.petbook")


class PetbookError(Exception):
    """Base class for errors raised by petbook components."""
