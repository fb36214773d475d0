"""
Unit tests for config module
Tests configuration management
"""
import os
from unittest.mock import patch

import pytest

from cf_orchestrator.config import build_environment, get_config
from cf_orchestrator.exceptions import ConfigurationError, InvalidEnvironment


@pytest.mark.unit
class TestConfig:
    """Test configuration management"""

    @patch.dict(os.environ, {'ENVIRONMENT': 'Staging'})
    def test_get_environment(self):
        """Test getting environment variable"""
        assert get_config().get_environment_name() == 'staging'

    @patch.dict(os.environ, {}, clear=True)
    def test_default_environment(self):
        """Test default environment when not set"""
        assert get_config().get_environment_name() == 'sandbox'

    @patch.dict(os.environ, {'AWS_REGION': 'us-west-2', 'AWS_DEFAULT_REGION': 'eu-west-1'})
    def test_get_region(self):
        """Test AWS_REGION wins over AWS_DEFAULT_REGION"""
        assert get_config().get_region() == 'us-west-2'

    @patch.dict(os.environ, {}, clear=True)
    def test_default_region(self):
        """Test default region when not set"""
        assert get_config().get_region() == 'us-east-1'

    @patch.dict(os.environ, {'AWS_ENDPOINT_URL': 'http://localhost:4566'})
    def test_endpoint_url(self):
        """Test custom endpoint for LocalStack"""
        assert get_config().get_endpoint_url() == 'http://localhost:4566'

    @patch.dict(os.environ, {'CF_POLL_INTERVAL': '5', 'CF_STACK_TIMEOUT': '120', 'CF_TRANSIENT_RETRIES': '1'})
    def test_numeric_settings(self):
        """Test numeric settings are parsed"""
        config = get_config()

        assert config.get_poll_interval() == 5.0
        assert config.get_stack_timeout() == 120.0
        assert config.get_transient_retries() == 1

    @patch.dict(os.environ, {}, clear=True)
    def test_numeric_defaults(self):
        """Test numeric defaults"""
        config = get_config()

        assert config.get_poll_interval() == 15.0
        assert config.get_stack_timeout() == 3600.0
        assert config.get_transient_retries() == 3

    @patch.dict(os.environ, {'CF_POLL_INTERVAL': 'soon'})
    def test_invalid_number(self):
        """Test non-numeric settings raise ConfigurationError"""
        with pytest.raises(ConfigurationError, match='CF_POLL_INTERVAL'):
            get_config().get_poll_interval()

    @patch.dict(os.environ, {'CF_STACK_TIMEOUT': '-1'})
    def test_negative_number(self):
        """Test negative settings raise ConfigurationError"""
        with pytest.raises(ConfigurationError, match='must not be negative'):
            get_config().get_stack_timeout()

    def test_config_singleton(self):
        """Test config is singleton"""
        assert get_config() is get_config()


@pytest.mark.unit
class TestBuildEnvironment:
    """Test Environment construction"""

    @patch.dict(os.environ, {}, clear=True)
    def test_explicit_arguments(self):
        """Test explicit arguments win over configuration"""
        environment = build_environment('production', 'us-west-2')

        assert environment.name == 'production'
        assert environment.region == 'us-west-2'
        assert environment.parameter_set == 'production'
        assert environment.project == 'cf-scalable-web'

    @patch.dict(os.environ, {'ENVIRONMENT': 'staging', 'AWS_REGION': 'eu-west-1', 'CF_PROJECT_NAME': 'acme'})
    def test_from_configuration(self):
        """Test defaults come from environment variables"""
        environment = build_environment()

        assert environment.name == 'staging'
        assert environment.region == 'eu-west-1'
        assert environment.project == 'acme'

    def test_custom_parameter_set(self):
        """Test the parameter set can differ from the environment name"""
        environment = build_environment('feature-x', 'us-east-1', parameter_set='sandbox')

        assert environment.parameter_set == 'sandbox'

    @pytest.mark.parametrize('name', ['1sandbox', 'prod_env', 'has space', 'a' * 33])
    def test_invalid_name(self, name):
        """Test names that cannot appear in a stack name are rejected"""
        with pytest.raises(InvalidEnvironment):
            build_environment(name, 'us-east-1')
