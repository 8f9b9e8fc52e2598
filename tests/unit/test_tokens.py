from sage.context.tokens import (
    DEFAULT_OPTIONS,
    TokenEstimateOptions,
    estimate_content_tokens,
    estimate_message_tokens,
    estimate_messages_tokens,
    estimate_text_tokens,
    is_image_part,
)


def test_text_tokens_round_up() -> None:
    assert estimate_text_tokens("") == 0
    assert estimate_text_tokens("abcd") == 1
    assert estimate_text_tokens("abcde") == 2
    assert estimate_text_tokens(None) == 0


def test_code_fences_use_denser_ratio() -> None:
    code = "```" + "x" * 38 + "```"
    options = TokenEstimateOptions(chars_per_token=4.0, code_chars_per_token=2.0)
    assert estimate_text_tokens(code, options) == 22
    assert estimate_text_tokens("y" * 44, options) == 11


def test_for_ratio_derives_code_ratio_with_floor() -> None:
    assert TokenEstimateOptions.for_ratio(4.0).code_chars_per_token == 3.5
    assert TokenEstimateOptions.for_ratio(3.0).code_chars_per_token == 3.0
    assert TokenEstimateOptions.for_ratio(5.0, image_tokens=10).image_tokens == 10


def test_image_parts_cost_a_flat_amount() -> None:
    content = [
        {"type": "text", "text": "abcd"},
        {"type": "image_url", "image_url": {"url": "https://example.com/a.png"}},
    ]
    assert is_image_part(content[1])
    assert not is_image_part(content[0])
    assert estimate_content_tokens(content) == 1 + DEFAULT_OPTIONS.image_tokens


def test_message_overhead_is_added_per_message() -> None:
    messages = [
        {"role": "system", "content": "abcd"},
        {"role": "user", "content": "abcdefgh"},
    ]
    assert estimate_message_tokens(messages[0]) == 5
    assert estimate_messages_tokens(messages) == 5 + 6
    assert estimate_message_tokens({"role": "assistant", "content": None}) == 4
