"""
Reaper module.
Contains the periodic reclamation of abandoned jobs.
"""

from jobstore.reaper.main import Reaper, run

__all__ = ["Reaper", "run"]
