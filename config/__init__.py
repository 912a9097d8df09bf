"""Configuration package for the chat server.

Values come from layered YAML files (base, per-environment, local) with
environment variables taking precedence.

Usage:
    from config import config

    secret = config.JWT_SECRET
    max_length = config.MESSAGE_MAX_LENGTH

Select the environment with FLASK_ENV or APP_ENV (development, staging,
production).
"""
from .settings import config, Config, is_dev, is_prod, get_env

__all__ = ['config', 'Config', 'is_dev', 'is_prod', 'get_env']
