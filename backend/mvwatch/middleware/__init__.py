"""Middleware package for FastAPI application"""
from mvwatch.middleware.logging_middleware import RequestLoggingMiddleware

__all__ = ['RequestLoggingMiddleware']
