"""
HTTP search boundary.
"""
