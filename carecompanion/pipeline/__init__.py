"""
pipeline — Assembles every subsystem into one CompanionPipeline.
"""
