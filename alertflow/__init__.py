"""
alertflow - alert correlation and automated response orchestration.
"""

__version__ = "0.1.0"
