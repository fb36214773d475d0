"""
Configuration management for the stack orchestrator
Reads settings from environment variables and builds Environment values
"""
import os
import re
from typing import Optional

from .exceptions import ConfigurationError, InvalidEnvironment
from .models import Environment

DEFAULT_ENVIRONMENT = 'sandbox'
DEFAULT_REGION = 'us-east-1'
DEFAULT_PROJECT = 'cf-scalable-web'

# Stack names allow letters, digits and hyphens and must start with a letter
ENVIRONMENT_NAME_PATTERN = re.compile(r'^[a-z][a-z0-9-]{0,31}$')


class ConfigManager:
    """Manages orchestrator configuration from environment variables"""

    def get_environment_name(self) -> str:
        return os.environ.get('ENVIRONMENT', DEFAULT_ENVIRONMENT).lower()

    def get_region(self) -> str:
        return os.environ.get('AWS_REGION') or os.environ.get('AWS_DEFAULT_REGION') or DEFAULT_REGION

    def get_endpoint_url(self) -> Optional[str]:
        """Custom endpoint, e.g. LocalStack"""
        return os.environ.get('AWS_ENDPOINT_URL') or None

    def get_project_name(self) -> str:
        return os.environ.get('CF_PROJECT_NAME', DEFAULT_PROJECT)

    def get_base_dir(self) -> str:
        """Directory that template and parameter references are relative to"""
        return os.environ.get('CF_BASE_DIR', '.')

    def get_poll_interval(self) -> float:
        return self._get_number('CF_POLL_INTERVAL', 15.0)

    def get_stack_timeout(self) -> float:
        return self._get_number('CF_STACK_TIMEOUT', 3600.0)

    def get_transient_retries(self) -> int:
        return int(self._get_number('CF_TRANSIENT_RETRIES', 3))

    def get_log_level(self) -> str:
        return os.environ.get('LOG_LEVEL', 'INFO').upper()

    def _get_number(self, key: str, default: float) -> float:
        value = os.environ.get(key)
        if value is None or value == '':
            return default
        try:
            number = float(value)
        except ValueError:
            raise ConfigurationError(f"Environment variable {key} must be a number, got {value!r}")
        if number < 0:
            raise ConfigurationError(f"Environment variable {key} must not be negative, got {value!r}")
        return number


# Global configuration manager instance
config_manager = ConfigManager()


def get_config() -> ConfigManager:
    """Get the global configuration manager"""
    return config_manager


def build_environment(
    name: Optional[str] = None,
    region: Optional[str] = None,
    parameter_set: Optional[str] = None,
    project: Optional[str] = None,
) -> Environment:
    """
    Build an Environment value from explicit arguments, falling back to config

    Args:
        name: Environment name (defaults to ENVIRONMENT)
        region: AWS region (defaults to AWS_REGION / AWS_DEFAULT_REGION)
        parameter_set: Parameter set selector (defaults to the environment name)
        project: Stack name prefix (defaults to CF_PROJECT_NAME)

    Raises:
        InvalidEnvironment: If the name cannot appear in a stack name
    """
    config = get_config()
    env_name = (name or config.get_environment_name()).lower()

    if not ENVIRONMENT_NAME_PATTERN.match(env_name):
        raise InvalidEnvironment(
            f"Invalid environment name {env_name!r}: use lowercase letters, digits and hyphens, "
            f"starting with a letter"
        )

    return Environment(
        name=env_name,
        region=region or config.get_region(),
        parameter_set=parameter_set or env_name,
        project=project or config.get_project_name(),
    )
