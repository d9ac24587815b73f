import unittest
from datetime import datetime

from contracts import ClipboardChangeEvent, ContentType
from clipassist.content import (
    build_prompt,
    build_prompt_for,
    build_question_prompt,
    detect_content_type,
    is_significant_change,
    is_unsupported_format,
    is_valid_change,
    looks_like_path,
    prepare_clipboard_text,
    preview,
    sanitize_content,
)
from clipassist.errors import UnsupportedContentError

FIFTY = "alpha beta gamma delta epsilon zeta eta theta iota"


def _event(new_value, previous_value=""):
    return ClipboardChangeEvent(
        previous_value=previous_value,
        new_value=new_value,
        content_type=detect_content_type(new_value),
        length=len(new_value),
        is_empty=not new_value.strip(),
        is_significant=is_significant_change(new_value, previous_value),
        timestamp=datetime.now(),
    )


class TestDetectContentType(unittest.TestCase):
    def test_empty_and_whitespace(self):
        self.assertEqual(detect_content_type(""), ContentType.EMPTY)
        self.assertEqual(detect_content_type("   \n\t"), ContentType.EMPTY)
        self.assertEqual(detect_content_type(None), ContentType.EMPTY)

    def test_urls(self):
        self.assertEqual(detect_content_type("https://example.com"), ContentType.URL)
        self.assertEqual(detect_content_type("  HTTP://example.com/a?b=c "), ContentType.URL)
        self.assertEqual(detect_content_type("www.example.com"), ContentType.URL)

    def test_email(self):
        self.assertEqual(detect_content_type("someone@example.org"), ContentType.EMAIL)
        self.assertNotEqual(detect_content_type("someone @example.org"), ContentType.EMAIL)

    def test_code(self):
        self.assertEqual(detect_content_type("def foo():\n    return 1"), ContentType.CODE)
        self.assertEqual(detect_content_type("const x = 1;"), ContentType.CODE)
        self.assertEqual(detect_content_type("if (a) { b }"), ContentType.CODE)
        self.assertEqual(detect_content_type("print(x)"), ContentType.CODE)

    def test_url_checked_before_code(self):
        self.assertEqual(
            detect_content_type("https://example.com/search?q=(a)"), ContentType.URL
        )

    def test_long_and_short_text(self):
        long_text = "This sentence is long enough to count as long text. " * 3
        self.assertEqual(detect_content_type(long_text), ContentType.LONG_TEXT)
        self.assertEqual(detect_content_type("just a few words"), ContentType.SHORT_TEXT)
        self.assertEqual(detect_content_type("x" * 150), ContentType.SHORT_TEXT)


class TestValidChange(unittest.TestCase):
    def test_length_bounds(self):
        self.assertFalse(is_valid_change("ab", ""))
        self.assertFalse(is_valid_change("  ab  ", ""))
        self.assertTrue(is_valid_change("abc", ""))
        self.assertTrue(is_valid_change("x" * 10000, ""))
        self.assertFalse(is_valid_change("x" * 10001, ""))

    def test_identical_and_empty(self):
        self.assertFalse(is_valid_change("same value", "same value"))
        self.assertFalse(is_valid_change("", ""))
        self.assertFalse(is_valid_change("   ", ""))
        self.assertFalse(is_valid_change(None, "previous"))

    def test_custom_bounds(self):
        self.assertFalse(is_valid_change("abcd", "", min_length=5))
        self.assertFalse(is_valid_change("abcdef", "", max_length=5))


class TestSignificantChange(unittest.TestCase):
    def test_fixture_is_fifty_chars(self):
        self.assertEqual(len(FIFTY), 50)
        self.assertEqual(detect_content_type(FIFTY), ContentType.SHORT_TEXT)

    def test_from_empty_is_significant(self):
        self.assertTrue(is_significant_change("hello there", ""))
        self.assertTrue(is_significant_change("hello there", "   "))

    def test_small_real_edit_is_significant(self):
        new_value = FIFTY + " x"
        self.assertEqual(len(new_value), 52)
        self.assertTrue(is_significant_change(new_value, FIFTY))

    def test_whitespace_only_edit_is_not_significant(self):
        new_value = FIFTY.replace("beta", "beta  ")
        self.assertEqual(len(new_value), 52)
        self.assertFalse(is_significant_change(new_value, FIFTY))

    def test_case_only_edit_is_not_significant(self):
        self.assertFalse(is_significant_change(FIFTY.upper(), FIFTY))

    def test_large_length_change_is_significant(self):
        self.assertTrue(is_significant_change(FIFTY * 3, FIFTY))

    def test_type_change_is_significant(self):
        self.assertTrue(is_significant_change("https://example.com/a", "example.com/ab"))


class TestUnsupportedFormat(unittest.TestCase):
    def test_binary_markers(self):
        self.assertTrue(is_unsupported_format("abc\x00def"))
        self.assertTrue(is_unsupported_format("abc\ufffddef"))

    def test_paths(self):
        self.assertTrue(looks_like_path("C:\\Users\\me\\file.txt"))
        self.assertTrue(looks_like_path("\\\\server\\share"))
        self.assertTrue(looks_like_path("/usr/local/bin/python"))
        self.assertTrue(looks_like_path("~/notes.txt"))
        self.assertTrue(looks_like_path("./build/output"))
        self.assertFalse(looks_like_path("/usr/local and more words"))
        self.assertFalse(looks_like_path("line one\n/usr/bin"))

    def test_abnormal_lines(self):
        blob = "A" * 300
        self.assertTrue(is_unsupported_format(blob))
        self.assertTrue(is_unsupported_format(f"{blob}\n{blob}\nshort"))
        self.assertFalse(is_unsupported_format(f"{blob}\nshort\nshort"))

    def test_regular_prose(self):
        prose = "Regular sentence with plenty of words in it. " * 10
        self.assertFalse(is_unsupported_format(prose))


class TestSanitizeAndPrepare(unittest.TestCase):
    def test_sanitize(self):
        raw = "  line one  \r\n\r\n\r\n\r\nline\t\t two   \rline three\x00 "
        self.assertEqual(sanitize_content(raw), "line one\n\nline two\nline three")

    def test_prepare_rejects(self):
        with self.assertRaises(UnsupportedContentError):
            prepare_clipboard_text("   ")
        with self.assertRaises(UnsupportedContentError):
            prepare_clipboard_text("ab")
        with self.assertRaises(UnsupportedContentError):
            prepare_clipboard_text("x " * 6000)
        with self.assertRaises(UnsupportedContentError):
            prepare_clipboard_text("/etc/passwd")
        with self.assertRaises(UnsupportedContentError):
            prepare_clipboard_text(None)

    def test_prepare_error_tag(self):
        try:
            prepare_clipboard_text("ab")
        except UnsupportedContentError as e:
            self.assertEqual(e.error_type, "unsupported-content")
            self.assertIn("too short", e.message)

    def test_prepare_returns_sanitized(self):
        self.assertEqual(prepare_clipboard_text("  hello   world  "), "hello world")


class TestPrompts(unittest.TestCase):
    def test_url_from_empty(self):
        event = _event("https://example.com")
        self.assertEqual(event.content_type, ContentType.URL)
        self.assertTrue(event.is_significant)
        prompt = build_prompt(event)
        self.assertTrue(prompt.startswith("This appears to be a URL."))
        self.assertTrue(prompt.endswith("https://example.com"))

    def test_code_prompt(self):
        prompt = build_prompt_for("def f(): pass", ContentType.CODE)
        self.assertIn("analyze this code", prompt)

    def test_email_prompt(self):
        prompt = build_prompt_for("a@b.co", ContentType.EMAIL)
        self.assertIn("email address", prompt)

    def test_default_prompt(self):
        for content_type in (ContentType.SHORT_TEXT, ContentType.LONG_TEXT, ContentType.TEXT):
            prompt = build_prompt_for("some words", content_type)
            self.assertTrue(prompt.startswith("Please provide a brief analysis or summary"))

    def test_question_prompt(self):
        prompt = build_question_prompt("  What is   asyncio? ")
        self.assertEqual(
            prompt,
            "Question: What is asyncio?\n\nPlease provide a helpful and informative response.",
        )

    def test_preview(self):
        self.assertEqual(preview("short"), "short")
        self.assertEqual(preview("x" * 150), "x" * 100 + "...")
        self.assertEqual(preview(None), "")


if __name__ == "__main__":
    unittest.main()
