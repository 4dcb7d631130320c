"""
blindrelay - end-to-end encrypted messaging over a blind relay.
"""

__version__ = "1.0.0"
