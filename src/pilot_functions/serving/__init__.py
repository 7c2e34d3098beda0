"""
Serving layer — FastAPI application exposing every function as a
``POST /functions/v1/<name>`` route.
"""
