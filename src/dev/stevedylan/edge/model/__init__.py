"""
Data Models

Pydantic models for the records this service persists and for the documents it
receives from authorization servers.

Key Models:
- session.py: In-flight authorization state and stored sessions
- oauth.py: Authorization server metadata, PAR and token responses
- health.py: Health monitoring gauge
"""
