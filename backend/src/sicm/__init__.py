"""
SICM - Suggested Investigations Case Management

Evaluates anti-abuse signals against wiki users, groups matching users into
investigation cases, and closes cases whose users have all been
indefinitely blocked, locally or on any other wiki.
"""

__version__ = "0.1.0"
