"""
HTTP API for the SQL engine.
"""
