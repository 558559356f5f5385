"""Configuration package."""
from library_fines.config.config import Config, TestConfig

__all__ = ['Config', 'TestConfig']
