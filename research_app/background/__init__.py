"""
Celery app and tasks that run research jobs outside the API process
"""
