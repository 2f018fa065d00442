"""Tests for prompt parsing and validation."""

from workflow_engine.utils.prompt_parser import estimate_cost, parse_prompts, validate_prompts


class TestParsePrompts:
    """Test suite for parse_prompts."""

    def test_blank_line_separated(self):
        """Test that prompts are split on blank lines and trimmed."""
        text = "  a beautiful sunset over mountains \n\n\n a futuristic city\nat night\n\n"
        assert parse_prompts(text) == [
            "a beautiful sunset over mountains",
            "a futuristic city\nat night",
        ]

    def test_windows_line_endings(self):
        """Test CRLF input."""
        assert parse_prompts("first prompt\r\n\r\nsecond prompt") == ["first prompt", "second prompt"]

    def test_empty_input(self):
        """Test empty and non-string input."""
        assert parse_prompts("") == []
        assert parse_prompts("\n\n   \n\n") == []
        assert parse_prompts(None) == []


class TestValidatePrompts:
    """Test suite for validate_prompts."""

    def test_valid_prompts(self):
        """Test that ordinary prompts pass."""
        assert validate_prompts(["a red bicycle", "a fox in the snow"]) == []

    def test_length_limits(self):
        """Test prompt length bounds."""
        errors = validate_prompts(["ab", "x" * 1001])
        assert "Prompt at index 0 is too short (minimum 3 characters)" in errors
        assert "Prompt at index 1 is too long (maximum 1000 characters)" in errors

    def test_count_limits(self):
        """Test batch size bounds."""
        assert validate_prompts([]) == ["Minimum 1 prompt(s) required, got 0"]
        assert validate_prompts(["valid prompt"] * 3, max_prompts=2) == ["Maximum 2 prompts allowed, got 3"]

    def test_dangerous_content(self):
        """Test script injection patterns."""
        for prompt in ["<SCRIPT>alert(1)</script>", "click javascript:void(0)", "img onerror=x"]:
            assert validate_prompts([prompt]) == ["Prompt at index 0 contains potentially dangerous content"]

    def test_non_list(self):
        """Test that the input must be a list."""
        assert validate_prompts("just a string") == ["Prompts must be a list"]


class TestEstimateCost:
    """Test suite for estimate_cost."""

    def test_estimate(self):
        """Test cost per image times image count."""
        estimate = estimate_cost(10, 0.039)
        assert estimate == {"total_cost": 0.39, "cost_per_image": 0.039, "image_count": 10, "currency": "USD"}
