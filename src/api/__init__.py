"""
HTTP API — FastAPI application serving the publish endpoint and calendar feed.
"""
