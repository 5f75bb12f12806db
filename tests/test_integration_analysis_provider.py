"""
Tests for the Bedrock AgentCore analysis provider.
"""

import json
import pytest
from unittest.mock import MagicMock, patch
from botocore.exceptions import ClientError
import sys
import os

# Add src to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '../src'))

from domain.errors import ConfigurationError, TransientAnalysisFailure
from integrations import analysis_provider
from integrations.analysis_provider import ProviderUnavailable


def _runtime_response(body):
    raw = body if isinstance(body, bytes) else json.dumps(body).encode('utf-8')
    return {'response': MagicMock(read=lambda: raw)}


def _client_error(code, message='boom'):
    return ClientError({'Error': {'Code': code, 'Message': message}}, 'InvokeAgentRuntime')


class TestConfiguration:
    """Test provider configuration detection."""

    def test_is_configured_with_arn_and_client(self):
        assert analysis_provider.is_configured() is True

    def test_is_configured_without_arn(self):
        with patch.object(analysis_provider, 'AGENT_RUNTIME_ARN', None):
            assert analysis_provider.is_configured() is False

    def test_read_arn_missing_returns_none(self):
        """Test a missing ARN disables the provider instead of failing import."""
        with patch.dict(os.environ, {}, clear=True):
            assert analysis_provider._read_agent_runtime_arn() is None

    def test_read_arn_invalid_format(self):
        with patch.dict(os.environ, {'AGENT_RUNTIME_ARN': 'not-an-arn'}):
            with pytest.raises(ConfigurationError, match="invalid format"):
                analysis_provider._read_agent_runtime_arn()

    def test_complete_unconfigured(self):
        with patch.object(analysis_provider, 'bedrock_client', None):
            with pytest.raises(ConfigurationError, match="not configured"):
                analysis_provider.complete("Analyze this")


class TestSessionId:
    """Test runtime session ids."""

    def test_tagged_and_long_enough(self):
        session_id = analysis_provider.session_id_for('acme')

        assert session_id.startswith('intel-acme-')
        assert len(session_id) >= analysis_provider.MIN_SESSION_ID_LENGTH

    def test_unsafe_characters_replaced(self):
        assert analysis_provider.session_id_for('acme corp/eu').startswith('intel-acme-corp-eu-')

    def test_unique_per_call(self):
        assert analysis_provider.session_id_for('acme') != analysis_provider.session_id_for('acme')

    def test_default_tag(self):
        assert analysis_provider.session_id_for().startswith('intel-batch-')


class TestExtractOutput:
    """Test completion text extraction."""

    @pytest.mark.parametrize('body,expected', [
        ({'response': 'plain answer'}, 'plain answer'),
        ({'output': 'from output'}, 'from output'),
        ({'result': [{'index': 0, 'insights': []}]}, '[{"index": 0, "insights": []}]'),
        ([{'index': 0, 'insights': []}], '[{"index": 0, "insights": []}]'),
        ({'unexpected': 1}, '{"unexpected": 1}'),
    ])
    def test_json_shapes(self, body, expected):
        assert analysis_provider.extract_output(json.dumps(body).encode('utf-8')) == expected

    def test_plain_text_body(self):
        assert analysis_provider.extract_output(b'not json at all') == 'not json at all'

    def test_empty_body(self):
        assert analysis_provider.extract_output(b'') == ''


class TestComplete:
    """Test the complete() call."""

    @patch('integrations.analysis_provider.bedrock_client')
    def test_success(self, mock_client):
        # Setup
        mock_client.invoke_agent_runtime.return_value = _runtime_response({'output': '[]'})

        # Execute
        result = analysis_provider.complete('Analyze batch', organization_id='acme')

        # Assert
        assert result == '[]'
        kwargs = mock_client.invoke_agent_runtime.call_args[1]
        assert kwargs['agentRuntimeArn'] == analysis_provider.AGENT_RUNTIME_ARN
        assert kwargs['runtimeSessionId'].startswith('intel-acme-')
        assert json.loads(kwargs['payload']) == {'prompt': 'Analyze batch'}
        assert kwargs['qualifier'] == 'DEFAULT'

    @pytest.mark.parametrize('prompt', ['', None])
    def test_empty_prompt(self, prompt):
        with pytest.raises(ValueError, match="non-empty"):
            analysis_provider.complete(prompt)

    @pytest.mark.parametrize('code', ['ResourceNotFoundException', 'AccessDeniedException'])
    @patch('integrations.analysis_provider.bedrock_client')
    def test_misconfiguration_errors(self, mock_client, code):
        mock_client.invoke_agent_runtime.side_effect = _client_error(code)

        with pytest.raises(ConfigurationError, match=code):
            analysis_provider.complete('Analyze batch')

    @pytest.mark.parametrize('code', ['ThrottlingException', 'InternalServerException', 'SomethingNew'])
    @patch('integrations.analysis_provider.bedrock_client')
    def test_service_errors_are_transient(self, mock_client, code):
        mock_client.invoke_agent_runtime.side_effect = _client_error(code, 'slow down')

        with pytest.raises(ProviderUnavailable, match=f"{code}: slow down") as exc_info:
            analysis_provider.complete('Analyze batch')

        assert isinstance(exc_info.value, TransientAnalysisFailure)
        assert mock_client.invoke_agent_runtime.call_count == 1

    @patch('integrations.analysis_provider.bedrock_client')
    def test_empty_response(self, mock_client):
        mock_client.invoke_agent_runtime.return_value = _runtime_response(b'')

        assert analysis_provider.complete('Analyze batch') == ''


if __name__ == '__main__':
    pytest.main([__file__, '-v'])
