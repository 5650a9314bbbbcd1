"""
SoundGraph Affinity.

Listening-behaviour graph and ranked retrieval (personalized, similar,
trending and by-genre recommendations) for a media catalog.
"""

__version__ = "0.1"
