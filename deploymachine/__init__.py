"""
Deploy Machine - runs git actions on GitHub notifications and periodic checks
"""

__version__ = "1.0.0"
