"""Readings cache service: five caching policies in front of a document store."""
