"""
Unit tests for the JSON and JSON Lines parser
"""

import io

import pytest

from ingestion.parsers.json_parser import JsonParser, navigate
from schemas.profile import FormatConfig


async def parse(content: str, config: FormatConfig = None, parser: JsonParser = None):
    parser = parser or JsonParser()
    rows = parser.parse(io.BytesIO(content.encode("utf-8")), config or FormatConfig())
    return [row async for row in rows]


class TestJsonDocument:
    """Test JSON document parsing"""

    @pytest.mark.asyncio
    async def test_array_of_objects(self):
        """Each array element becomes a row numbered from 1"""
        rows = await parse('[{"id": 1, "name": "Alice"}, {"id": 2, "name": "Bob", "active": true}]')

        assert len(rows) == 2
        assert rows[0].columns == {"id": 1, "name": "Alice"}
        assert rows[1].columns == {"id": 2, "name": "Bob", "active": True}
        assert [r.line_number for r in rows] == [1, 2]

    @pytest.mark.asyncio
    async def test_nested_values_become_json_text(self):
        """Nested objects and arrays are kept as compact JSON text"""
        rows = await parse('[{"id": 1, "tags": ["a", "b"], "address": {"city": "Oslo"}}]')

        assert rows[0].columns["tags"] == '["a","b"]'
        assert rows[0].columns["address"] == '{"city":"Oslo"}'

    @pytest.mark.asyncio
    async def test_data_root_path(self):
        """Records are located through the dotted root path"""
        content = '{"meta": {"count": 2}, "data": {"items": [{"id": "a"}, {"id": "b"}]}}'
        rows = await parse(content, FormatConfig(data_root_path="$.data.items"))

        assert [r.columns["id"] for r in rows] == ["a", "b"]

    @pytest.mark.asyncio
    async def test_single_object(self):
        """A lone object is one row"""
        rows = await parse('{"id": 7, "name": "Solo"}')

        assert len(rows) == 1
        assert rows[0].columns == {"id": 7, "name": "Solo"}

    @pytest.mark.asyncio
    async def test_scalar_elements(self):
        """Scalars inside the array become a value column"""
        rows = await parse("[1, null, \"x\"]")

        assert [r.columns for r in rows] == [{"value": 1}, {"value": None}, {"value": "x"}]

    @pytest.mark.asyncio
    async def test_integer_beyond_64_bits(self):
        """Integers outside the signed 64-bit range fall back to float"""
        rows = await parse('[{"small": 42, "big": 18446744073709551616}]')

        assert rows[0].columns["small"] == 42
        assert isinstance(rows[0].columns["big"], float)

    @pytest.mark.asyncio
    async def test_malformed_document(self):
        """Malformed JSON yields one error row at line 0"""
        rows = await parse('[{"id": 1,')

        assert len(rows) == 1
        assert rows[0].line_number == 0
        assert rows[0].parse_error.startswith("JSON parse error")

    @pytest.mark.asyncio
    async def test_missing_root_path(self):
        """A root path that does not resolve is a structural error"""
        rows = await parse('{"data": []}', FormatConfig(data_root_path="$.items"))

        assert len(rows) == 1
        assert not rows[0].is_valid
        assert "items" in rows[0].parse_error

    @pytest.mark.asyncio
    async def test_root_path_to_scalar(self):
        """A root path ending at a scalar is rejected"""
        rows = await parse('{"data": 5}', FormatConfig(data_root_path="data"))

        assert len(rows) == 1
        assert "Expected an array or object" in rows[0].parse_error


class TestJsonLines:
    """Test line-delimited JSON parsing"""

    @pytest.mark.asyncio
    async def test_lines(self):
        """Each non-blank line is a row numbered by physical line"""
        content = '{"id": 1}\n\n{"id": 2}\n'
        rows = await parse(content, FormatConfig(is_json_lines=True))

        assert [r.columns for r in rows] == [{"id": 1}, {"id": 2}]
        assert [r.line_number for r in rows] == [1, 3]

    @pytest.mark.asyncio
    async def test_bad_line_is_isolated(self):
        """A malformed line yields an error row and the rest still parse"""
        content = '{"id": 1}\n{"id": \n{"id": 3}\n'
        rows = await parse(content, parser=JsonParser(force_json_lines=True))

        assert len(rows) == 3
        assert rows[0].is_valid and rows[2].is_valid
        assert rows[1].line_number == 2
        assert rows[1].parse_error.startswith("Line 2:")


class TestNavigate:
    """Test root path navigation"""

    def test_empty_path_returns_document(self):
        document = {"a": 1}
        assert navigate(document, None) is document
        assert navigate(document, "$") is document

    def test_dotted_path(self):
        assert navigate({"a": {"b": [1, 2]}}, "a.b") == [1, 2]

    def test_parent_not_object(self):
        with pytest.raises(ValueError):
            navigate({"a": [1]}, "$.a.b")
