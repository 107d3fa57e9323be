from __future__ import annotations

import json
from pathlib import Path

import pytest

from harvester.services.merge import OutputParseError, read_output_file


def test_reads_json_array(tmp_path: Path) -> None:
    path = tmp_path / "output.json"
    path.write_text(json.dumps([{"place_id": "a"}, {"place_id": "b"}]), encoding="utf-8")
    assert read_output_file(path) == [{"place_id": "a"}, {"place_id": "b"}]


def test_single_object_becomes_one_item_list(tmp_path: Path) -> None:
    path = tmp_path / "output.json"
    path.write_text('{"place_id": "solo"}', encoding="utf-8")
    assert read_output_file(path) == [{"place_id": "solo"}]


def test_reads_ndjson_and_ignores_blank_lines(tmp_path: Path) -> None:
    path = tmp_path / "output.json"
    path.write_text('{"place_id": "a"}\n\n{"place_id": "b"}\n', encoding="utf-8")
    assert read_output_file(path) == [{"place_id": "a"}, {"place_id": "b"}]


def test_empty_array_is_a_valid_empty_result(tmp_path: Path) -> None:
    path = tmp_path / "output.json"
    path.write_text("[]", encoding="utf-8")
    assert read_output_file(path) == []


@pytest.mark.parametrize("content", ["", "   \n\n"])
def test_empty_file_is_rejected(tmp_path: Path, content: str) -> None:
    path = tmp_path / "output.json"
    path.write_text(content, encoding="utf-8")
    with pytest.raises(OutputParseError, match="empty"):
        read_output_file(path)


def test_undecodable_line_fails_whole_file(tmp_path: Path) -> None:
    path = tmp_path / "output.json"
    path.write_text('{"place_id": "a"}\n{"place_id": \n', encoding="utf-8")
    with pytest.raises(OutputParseError, match="line 2"):
        read_output_file(path)


def test_scalar_document_is_rejected(tmp_path: Path) -> None:
    path = tmp_path / "output.json"
    path.write_text("42", encoding="utf-8")
    with pytest.raises(OutputParseError):
        read_output_file(path)
