"""
Persistence store: engine, ORM schema and the repository used by the
importer and analytics.
"""
