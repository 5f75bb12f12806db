"""
Utility functions shared by the domain layer.

This package contains reusable service functions for address handling,
content signals, prompt templates and S3 interactions.
"""

__all__ = ['email', 'prompts', 's3', 'signals']
