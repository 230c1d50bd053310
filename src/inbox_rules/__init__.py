"""
Inbox rules engine: match incoming mail against user rules and act on it
"""
__version__ = '0.1'
