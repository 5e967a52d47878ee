"""
Web Application

aiohttp application for the edge API: configuration, server wiring, middleware,
metrics, background tasks and request handlers.
"""
