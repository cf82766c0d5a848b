"""
store — Supabase (PostgREST) and in-memory table stores, plus the care repository.
"""
