"""
Tests for prompt management service.
"""

import pytest
from unittest.mock import patch, MagicMock, mock_open
from botocore.exceptions import ClientError
import sys
import os

# Add src to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '../src'))

from services import prompts


@pytest.fixture(autouse=True)
def empty_cache():
    prompts.clear_cache()
    yield
    prompts.clear_cache()


class TestLoadFromFilesystem:
    """Test loading prompts from local filesystem."""

    @patch('builtins.open', new_callable=mock_open, read_data='Analyze {items}')
    def test_load_from_filesystem_success(self, mock_file):
        """Test successful prompt load from filesystem."""
        result = prompts._load_from_filesystem('intelligence_batch.txt')

        assert result == 'Analyze {items}'
        mock_file.assert_called_once_with(prompts.PROMPTS_DIR / 'intelligence_batch.txt', 'r', encoding='utf-8')

    @patch('builtins.open', side_effect=FileNotFoundError("File not found"))
    def test_load_from_filesystem_not_found(self, mock_file):
        """Test load when prompt file doesn't exist."""
        with pytest.raises(FileNotFoundError):
            prompts._load_from_filesystem('missing.txt')

    def test_packaged_template_has_placeholders(self):
        """Test the shipped batch template declares its variables."""
        content = prompts._load_from_filesystem(prompts.INTELLIGENCE_BATCH_PROMPT)

        for name in ('{organization_id}', '{item_count}', '{items}'):
            assert name in content


class TestLoadFromS3:
    """Test loading prompts from S3."""

    @patch('services.prompts.PROMPT_BUCKET', 'prompt-bucket')
    @patch('services.prompts.PROMPT_KEY_PREFIX', 'prompts/')
    @patch('services.s3.s3_client')
    def test_load_from_s3_success(self, mock_s3):
        """Test successful prompt load from S3."""
        # Setup
        mock_s3.get_object.return_value = {
            'Body': MagicMock(read=lambda: b'Prompt from S3')
        }

        # Execute
        result = prompts._load_from_s3('intelligence_batch.txt')

        # Assert
        assert result == 'Prompt from S3'
        mock_s3.get_object.assert_called_once_with(
            Bucket='prompt-bucket',
            Key='prompts/intelligence_batch.txt'
        )

    @patch('services.prompts.PROMPT_BUCKET', None)
    def test_load_from_s3_no_bucket(self):
        """Test load when PROMPT_BUCKET not set."""
        with pytest.raises(ValueError, match="PROMPT_BUCKET environment variable not set"):
            prompts._load_from_s3('intelligence_batch.txt')

    @patch('services.prompts.PROMPT_BUCKET', 'prompt-bucket')
    @patch('services.s3.s3_client')
    def test_load_from_s3_missing_object(self, mock_s3):
        """Test a missing override surfaces as KeyError."""
        mock_s3.get_object.side_effect = ClientError(
            {'Error': {'Code': 'NoSuchKey', 'Message': 'Key not found'}},
            'GetObject'
        )

        with pytest.raises(KeyError):
            prompts._load_from_s3('missing.txt')


class TestLoadPrompt:
    """Test main load_prompt function with caching and fallback."""

    @patch('services.prompts.PROMPT_BUCKET', 'prompt-bucket')
    @patch('services.prompts._load_from_s3')
    @patch('services.prompts._load_from_filesystem')
    def test_load_prompt_prefers_s3_override(self, mock_fs, mock_s3):
        override = 'S3 {organization_id} {item_count} {items}'
        mock_s3.return_value = override

        result = prompts.load_prompt('intelligence_batch.txt')

        assert result == override
        mock_fs.assert_not_called()

    @patch('services.prompts.PROMPT_BUCKET', 'prompt-bucket')
    @patch('services.prompts._load_from_s3')
    @patch('services.prompts._load_from_filesystem')
    def test_override_missing_placeholders_ignored(self, mock_fs, mock_s3):
        """Test an override that dropped {items} never reaches the analyzer."""
        mock_s3.return_value = 'Summarize {organization_id}'
        mock_fs.return_value = 'Packaged {organization_id} {item_count} {items}'

        result = prompts.load_prompt('intelligence_batch.txt')

        assert result == 'Packaged {organization_id} {item_count} {items}'

    @patch('services.prompts.PROMPT_BUCKET', 'prompt-bucket')
    @patch('services.prompts._load_from_s3')
    @patch('services.prompts._load_from_filesystem')
    def test_override_for_unregistered_prompt_not_checked(self, mock_fs, mock_s3):
        mock_s3.return_value = 'Anything goes'

        assert prompts.load_prompt('other.txt') == 'Anything goes'
        mock_fs.assert_not_called()

    @pytest.mark.parametrize('error', [
        KeyError('prompts/intelligence_batch.txt'),
        ValueError('S3 bucket not found: prompt-bucket'),
        ClientError({'Error': {'Code': 'AccessDenied', 'Message': 'Denied'}}, 'GetObject'),
    ])
    @patch('services.prompts.PROMPT_BUCKET', 'prompt-bucket')
    @patch('services.prompts._load_from_s3')
    @patch('services.prompts._load_from_filesystem')
    def test_load_prompt_fallback_to_filesystem(self, mock_fs, mock_s3, error):
        """Test fallback to filesystem when the S3 override is unavailable."""
        mock_s3.side_effect = error
        mock_fs.return_value = 'Prompt from filesystem'

        result = prompts.load_prompt('intelligence_batch.txt')

        assert result == 'Prompt from filesystem'
        mock_fs.assert_called_once_with('intelligence_batch.txt')

    @patch('services.prompts.PROMPT_BUCKET', None)
    @patch('services.prompts._load_from_s3')
    @patch('services.prompts._load_from_filesystem')
    def test_load_prompt_no_s3_bucket_configured(self, mock_fs, mock_s3):
        """Test loading when PROMPT_BUCKET not set (skip S3)."""
        mock_fs.return_value = 'Prompt from filesystem'

        assert prompts.load_prompt('intelligence_batch.txt') == 'Prompt from filesystem'
        mock_s3.assert_not_called()

    @patch('services.prompts.PROMPT_BUCKET', None)
    @patch('services.prompts._load_from_filesystem')
    def test_load_prompt_not_found_anywhere(self, mock_fs):
        mock_fs.side_effect = FileNotFoundError("Not found")

        with pytest.raises(ValueError, match="Prompt 'missing.txt' not found in S3 or local filesystem"):
            prompts.load_prompt('missing.txt')


class TestLoadPromptCaching:
    """Test prompt caching behavior with TTL."""

    @patch('services.prompts.CACHE_TTL_SECONDS', 5)
    @patch('services.prompts.PROMPT_BUCKET', None)
    @patch('services.prompts._load_from_filesystem')
    @patch('services.prompts.time.time')
    def test_cache_expired_after_ttl(self, mock_time, mock_fs):
        """Test that cache is used within TTL and reloaded after it."""
        mock_fs.side_effect = ['First load', 'Second load after TTL']

        mock_time.return_value = 0
        assert prompts.load_prompt('intelligence_batch.txt') == 'First load'

        mock_time.return_value = 3
        assert prompts.load_prompt('intelligence_batch.txt') == 'First load'
        assert mock_fs.call_count == 1

        mock_time.return_value = 6
        assert prompts.load_prompt('intelligence_batch.txt') == 'Second load after TTL'
        assert mock_fs.call_count == 2

    @patch('services.prompts.PROMPT_BUCKET', None)
    @patch('services.prompts._load_from_filesystem')
    def test_cache_bypass_with_use_cache_false(self, mock_fs):
        mock_fs.side_effect = ['First load', 'Second load']

        prompts.load_prompt('intelligence_batch.txt')
        result = prompts.load_prompt('intelligence_batch.txt', use_cache=False)

        assert result == 'Second load'
        assert mock_fs.call_count == 2

    @patch('services.prompts.PROMPT_BUCKET', None)
    @patch('services.prompts._load_from_filesystem')
    def test_clear_cache_forces_reload(self, mock_fs):
        mock_fs.side_effect = ['First load', 'Second load after clear']

        prompts.load_prompt('intelligence_batch.txt')
        prompts.clear_cache()

        assert prompts.load_prompt('intelligence_batch.txt') == 'Second load after clear'


class TestTemplateVariables:
    """Test placeholder discovery."""

    def test_escaped_braces_ignored(self):
        assert prompts.template_variables('{a} {{not_a_var}} {b}') == frozenset({'a', 'b'})

    def test_packaged_template_satisfies_registry(self):
        content = prompts._load_from_filesystem(prompts.INTELLIGENCE_BATCH_PROMPT)

        assert prompts._missing_variables(prompts.INTELLIGENCE_BATCH_PROMPT, content) == frozenset()


class TestFormatPrompt:
    """Test prompt template formatting."""

    def test_format_prompt_with_variables(self):
        result = prompts.format_prompt("Organization {organization_id}: {item_count} item(s)",
                                       organization_id='acme', item_count=3)

        assert result == "Organization acme: 3 item(s)"

    def test_format_prompt_missing_variable(self):
        """Test formatting with missing required variable."""
        with pytest.raises(ValueError, match="Missing required variable in prompt: items"):
            prompts.format_prompt("Analyze {items}", organization_id='acme')

    def test_format_prompt_values_with_braces_pass_through(self):
        """Test JSON and brace-like text inside values is inserted unchanged."""
        items = '[{"index": 0, "body": "use {placeholder} here"}]'

        result = prompts.format_prompt("Items:\n{items}", items=items)

        assert result == "Items:\n" + items

    def test_format_prompt_unicode_variables(self):
        result = prompts.format_prompt("Body: {body}", body="你好 مرحبا שלום")

        assert "مرحبا" in result


class TestRenderPrompt:
    """Test load-and-format."""

    @patch('services.prompts.PROMPT_BUCKET', None)
    def test_render_packaged_batch_prompt(self):
        """Test the shipped template renders with literal JSON braces intact."""
        result = prompts.render_prompt(
            prompts.INTELLIGENCE_BATCH_PROMPT,
            organization_id='acme',
            item_count=1,
            items='[{"index": 0}]'
        )

        assert 'acme' in result
        assert '[{"index": 0}]' in result
        assert '{organization_id}' not in result


class TestPromptPathConstruction:
    """Test prompt file path construction."""

    def test_prompts_dir_path(self):
        """Test that PROMPTS_DIR points to src/prompts/."""
        assert prompts.PROMPTS_DIR.name == 'prompts'
        assert prompts.PROMPTS_DIR.parent.name == 'src'


if __name__ == '__main__':
    pytest.main([__file__, '-v'])
