"""
HealTrack scheduling core.

Slot generation, therapy session lifecycle and appointment range loading
for the clinic practice client.
"""

__version__ = "1.0.0"
