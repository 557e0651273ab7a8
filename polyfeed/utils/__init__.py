"""
Utilities Module
================

Configuration, logging and error types.
"""

from .config import Config
from .logger import get_logger, log_config

__all__ = ['Config', 'get_logger', 'log_config']
