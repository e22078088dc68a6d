"""
Data models for research jobs, documents, entities and reports.
"""
