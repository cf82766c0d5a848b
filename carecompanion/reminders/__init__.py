"""
reminders — Spoken medication reminders and spoken confirmations.
"""
