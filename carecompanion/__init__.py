"""
CareCompanion — Voice companion for seniors living alone.

Activation phrase → greeting → listen → classify → Gemini reply → speak,
with emergency fan-out to family contacts and spoken medication reminders.
"""

__version__ = "1.0.0"
__author__ = "CareCompanion Team"
