"""Safari Content Pipeline Workers

Batch media processing and job control for the itinerary ingestion pipeline.
"""
