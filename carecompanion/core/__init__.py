"""
core — Constants, configuration, structured logging, phase FSM, and timer seams.
"""
