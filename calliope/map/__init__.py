"""
Map view synchronisation.

Keeps the on-screen marker set, overlay draw order and selected-bucket
table in step with background aggregation runs.
"""
