import unittest
from dataclasses import replace

from topic_relay.prompts import PROMPT_SEPARATOR, PromptPart, flatten_parts, merge_prompts, should_coalesce

from tests.fakes import make_prompt


def _coalesces(left, right) -> bool:
    return should_coalesce(left, right, debounce_seconds=1.5, reply_window_seconds=30.0)


class MergePromptsTests(unittest.TestCase):
    def test_texts_join_with_separator(self) -> None:
        merged = merge_prompts(make_prompt(1, "Hello", created_at=100.0), make_prompt(2, "World", created_at=100.5))

        self.assertEqual([PromptPart.text_part(f"Hello{PROMPT_SEPARATOR}World")], merged.parts)
        self.assertEqual(1, merged.source_message_id)
        self.assertEqual(100.5, merged.created_at)

    def test_files_follow_merged_text_in_order(self) -> None:
        photo_a = PromptPart.file_part(mime="image/jpeg", filename="a.jpg", url="data:image/jpeg;base64,AA==")
        photo_b = PromptPart.file_part(mime="image/jpeg", filename="b.jpg", url="data:image/jpeg;base64,AQ==")
        left = make_prompt(1, "caption", media_group_id="album")
        left = replace(left, parts=[*left.parts, photo_a])
        right = replace(make_prompt(2, "", media_group_id="album"), parts=[photo_b])

        merged = merge_prompts(left, right)

        self.assertEqual([PromptPart.text_part("caption"), photo_a, photo_b], merged.parts)
        self.assertEqual("album", merged.media_group_id)

    def test_flatten_skips_blank_text(self) -> None:
        text, files = flatten_parts([PromptPart.text_part("  "), PromptPart.text_part(" a "), PromptPart.text_part("b")])
        self.assertEqual("a\n\nb", text)
        self.assertEqual([], files)


class ShouldCoalesceTests(unittest.TestCase):
    def test_same_author_within_debounce(self) -> None:
        self.assertTrue(_coalesces(make_prompt(1, "a", created_at=100.0), make_prompt(2, "b", created_at=100.5)))

    def test_same_author_after_debounce(self) -> None:
        self.assertFalse(_coalesces(make_prompt(1, "a", created_at=100.0), make_prompt(2, "b", created_at=102.0)))

    def test_different_authors_never_merge(self) -> None:
        left = make_prompt(1, "a", user_id=1)
        right = make_prompt(2, "b", user_id=2)
        self.assertFalse(_coalesces(left, right))

    def test_media_group_decides_when_both_have_one(self) -> None:
        left = make_prompt(1, "a", media_group_id="g1", created_at=100.0)
        self.assertTrue(_coalesces(left, make_prompt(2, "b", media_group_id="g1", created_at=160.0)))
        self.assertFalse(_coalesces(left, make_prompt(3, "c", media_group_id="g2", created_at=100.1)))

    def test_reply_to_staged_message_uses_reply_window(self) -> None:
        left = make_prompt(10, "a", created_at=100.0)
        self.assertTrue(_coalesces(left, make_prompt(11, "b", created_at=120.0, reply_to_message_id=10)))
        self.assertFalse(_coalesces(left, make_prompt(12, "c", created_at=131.0, reply_to_message_id=10)))


if __name__ == "__main__":
    unittest.main()
