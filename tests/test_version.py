import pytest

from gman.download.version import (
    Version,
    is_version_string,
    parse_version,
    try_parse_version,
)
from gman.exceptions import InvalidVersionError

pytestmark = [pytest.mark.unit, pytest.mark.core_downloads]


class TestVersionParsing:
    @pytest.mark.parametrize(
        "value", ["5", "5.2", "5.2.4670", "5.2.4670.0", "5.2.1-7059", " 4.0.1 "]
    )
    def test_accepts_numeric_versions(self, value):
        assert parse_version(value).raw == value.strip()

    @pytest.mark.parametrize(
        "value",
        [
            "",
            "master",
            "v1.0",
            "1.2.3-beta",
            "1..2",
            "1.2-3-4",
            "1.2.",
            "-7059",
            "1.2-",
        ],
    )
    def test_rejects_everything_else(self, value):
        with pytest.raises(InvalidVersionError) as exc_info:
            parse_version(value)
        assert exc_info.value.value == value

    def test_rejects_non_strings(self):
        with pytest.raises(InvalidVersionError):
            Version(5)  # type: ignore[arg-type]

    def test_release_and_build_parts(self):
        v = Version("5.2.1-7059")
        assert v.release == (5, 2, 1)
        assert v.build == 7059
        assert Version("5.2.1").build is None

    def test_str_and_repr_keep_literal(self):
        v = Version("5.2.4670.0")
        assert str(v) == "5.2.4670.0"
        assert repr(v) == "Version('5.2.4670.0')"


class TestVersionOrdering:
    def test_trailing_zeros_compare_equal(self):
        assert Version("5.2.4670") == Version("5.2.4670.0")
        assert hash(Version("5.2.4670")) == hash(Version("5.2.4670.0"))

    def test_numeric_not_lexicographic(self):
        assert Version("5.10") > Version("5.9")
        assert Version("10.0") > Version("9.99.99")

    def test_build_suffix_breaks_ties(self):
        assert Version("5.2.1-7059") > Version("5.2.1")
        assert Version("5.2.1-7060") > Version("5.2.1-7059")
        assert Version("5.2.1-9999") < Version("5.2.2")

    def test_sorting(self):
        versions = [Version(v) for v in ["5.2.1-7059", "5.3", "5.2.1", "4.9.9.9"]]
        assert [v.raw for v in sorted(versions)] == [
            "4.9.9.9",
            "5.2.1",
            "5.2.1-7059",
            "5.3",
        ]

    def test_not_equal_to_strings(self):
        assert Version("1.0") != "1.0"


class TestVersionHelpers:
    @pytest.mark.parametrize(
        "value,expected",
        [
            ("5.2.4670", True),
            ("5.2.1-7059", True),
            ("master", False),
            ("release/5.2", False),
            ("", False),
            (None, False),
        ],
    )
    def test_is_version_string(self, value, expected):
        assert is_version_string(value) is expected

    def test_try_parse_version_returns_none_for_invalid(self):
        assert try_parse_version("nightly", "CI build 12") is None
        assert try_parse_version(None) is None

    def test_try_parse_version_parses_valid(self):
        assert try_parse_version("1.2.3") == Version("1.2.3")
