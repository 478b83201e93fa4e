# Middleware package init
"""
Treatment AI Backend — Middleware Package
==========================================

Middleware Chain (outermost first):
    Request → [Rate Limit] → [Request ID] → [Access Log] → [GZip] → [CORS] → Route

    1. Rate Limit first: abusive clients are rejected before anything else runs
    2. Request ID: every later log line and error body can carry the ID
    3. Access Log: measures the full handling time, including compression

Starlette applies `add_middleware` calls in reverse, so main.py registers
them from the innermost (CORS) to the outermost (Rate Limit).
"""
