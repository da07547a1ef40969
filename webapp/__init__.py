"""
Browser console for the SQL engine.
"""
