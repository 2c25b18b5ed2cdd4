"""Prompt overrides and the NEEDS_INPUT protocol."""

from memini.prompts import load_prompt, split_needs_input


def test_split_needs_input():
    assert split_needs_input("All done.") == ("All done.", None)
    assert split_needs_input("Found two.\n[NEEDS_INPUT] Which one?") == ("Found two.", "Which one?")
    assert split_needs_input("[NEEDS_INPUT]: Proceed?  \n") == ("", "Proceed?")
    assert split_needs_input("[NEEDS_INPUT]") == ("", "The agent needs more input.")

    text = "I will print [NEEDS_INPUT] when blocked.\nBut I'm not blocked."
    assert split_needs_input(text) == (text, None)


def test_load_prompt_prefers_first_non_empty_override(tmp_path):
    first, second = tmp_path / "a", tmp_path / "b"
    first.mkdir()
    second.mkdir()
    (first / "persona.md").write_text("   \n", encoding="utf-8")
    (second / "persona.md").write_text("You are a pirate.\n", encoding="utf-8")

    assert load_prompt("persona.md", "bundled", dirs=[first, second]) == "You are a pirate."
    assert load_prompt("other.md", "  bundled text \n", dirs=[first, second]) == "bundled text"
