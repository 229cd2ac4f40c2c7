"""
NGINX configuration generator.

Renders the proxy configuration variants from Jinja2 templates.
"""

from .generator import ConfigGenerator, ConfigGeneratorError, get_config_generator

__all__ = ["ConfigGenerator", "ConfigGeneratorError", "get_config_generator"]
