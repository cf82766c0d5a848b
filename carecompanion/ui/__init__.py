"""
ui — FastAPI web server and the browser page that hosts speech I/O.
"""
