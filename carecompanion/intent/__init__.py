"""
intent — Keyword intent classification (emergency / health concern / general).
"""
