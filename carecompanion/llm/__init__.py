"""
llm — Prompt templates, Gemini REST client, and reply generation with fallbacks.
"""
