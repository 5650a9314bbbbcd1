"""
Relational collaborators: catalog metadata and the play-history log.
"""
