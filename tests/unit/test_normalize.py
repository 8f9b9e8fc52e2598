from sage.providers.normalize import (
    CONTEXT_PLACEHOLDER,
    JSON_ONLY_INSTRUCTION,
    collapse_system_messages,
    merge_adjacent_roles,
    normalize_messages,
    with_json_only_instruction,
)


def test_system_messages_collapse_to_front() -> None:
    messages = [
        {"role": "system", "content": "one"},
        {"role": "user", "content": "hi"},
        {"role": "system", "content": "two"},
    ]
    out = collapse_system_messages(messages)
    assert out[0] == {"role": "system", "content": "one\n\ntwo"}
    assert out[1:] == [{"role": "user", "content": "hi"}]


def test_adjacent_roles_merge_text_and_parts() -> None:
    image = {"type": "image_url", "image_url": {"url": "https://example.com/x.png"}}
    messages = [
        {"role": "user", "content": "a"},
        {"role": "user", "content": "b"},
        {"role": "assistant", "content": "c"},
        {"role": "assistant", "content": [image]},
    ]
    out = merge_adjacent_roles(messages)
    assert out[0] == {"role": "user", "content": "a\n\nb"}
    assert out[1]["content"] == [{"type": "text", "text": "c"}, image]
    assert messages[0]["content"] == "a"


def test_normalize_inserts_placeholder_user_before_assistant() -> None:
    messages = [
        {"role": "system", "content": "sys"},
        {"role": "assistant", "content": "earlier reply"},
        {"role": "user", "content": "question"},
    ]
    out = normalize_messages(messages)
    assert [m["role"] for m in out] == ["system", "user", "assistant", "user"]
    assert out[1]["content"] == CONTEXT_PLACEHOLDER


def test_json_only_instruction_is_appended_once() -> None:
    messages = [{"role": "system", "content": "Be terse."}, {"role": "user", "content": "x"}]
    once = with_json_only_instruction(messages)
    assert once[0]["content"] == "Be terse." + JSON_ONLY_INSTRUCTION
    assert with_json_only_instruction(once)[0]["content"] == once[0]["content"]
    assert messages[0]["content"] == "Be terse."

    bare = with_json_only_instruction([{"role": "user", "content": "x"}])
    assert bare[0]["role"] == "system"
    assert bare[0]["content"] == JSON_ONLY_INSTRUCTION.strip()
