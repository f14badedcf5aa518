"""
LifeGraph: life-context knowledge graph and conversation memory engine.
"""

__version__ = '1.0.0'

# Setup logging configuration on package import
from .utils.logging_config import setup_logging

setup_logging()
