"""Detection engines for threatmatch.

Provides indicator match correlation of observed events against
threat intelligence indicators stored in Elasticsearch.
"""
