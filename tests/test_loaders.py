"""
Unit Tests for the JSONL Document Loader
"""

import json

from curriculum_retrieval.loaders import derive_document_id, load_documents_jsonl, slugify


def write_lines(path, lines):
    path.write_text("\n".join(lines), encoding="utf-8")
    return path


class TestIds:

    def test_slugify_folds_accents(self):
        assert slugify("Les Fractions : égalité & quotients") == "les-fractions-egalite-quotients"

    def test_derived_id_is_stable_and_readable(self):
        first = derive_document_id("cinquieme", "Mathématiques", "Les fractions")
        second = derive_document_id("cinquieme", "Mathématiques", "Les fractions")

        assert first == second
        assert first.startswith("cinquieme-mathematiques-les-fractions-")
        assert len(first.rsplit("-", 1)[1]) == 8

    def test_different_titles_different_ids(self):
        assert derive_document_id("cm1", "sciences", "A") != derive_document_id("cm1", "sciences", "B")


class TestLoadJsonl:

    def test_loads_valid_lines(self, tmp_path):
        path = write_lines(tmp_path / "docs.jsonl", [
            json.dumps({"id": "d1", "content": "Texte.", "level": "cm1", "subject": "sciences"}),
            "",
            json.dumps({"id": "d2", "content": "Autre.", "level": "cm2", "subject": "sciences"}),
        ])

        documents, errors = load_documents_jsonl(path)

        assert [d.id for d in documents] == ["d1", "d2"]
        assert errors == []

    def test_defaults_fill_missing_fields(self, tmp_path):
        path = write_lines(tmp_path / "docs.jsonl", [
            json.dumps({"content": "Les volcans.", "title": "Volcans"}),
            json.dumps({"content": "Les séismes.", "level": "cm2", "subject": "geographie"}),
        ])

        documents, errors = load_documents_jsonl(path, level="cm1", subject="sciences")

        assert errors == []
        assert documents[0].level == "cm1"
        assert documents[0].subject == "sciences"
        assert documents[0].id == derive_document_id("cm1", "sciences", "Volcans")
        assert documents[1].level == "cm2"
        assert documents[1].id.startswith("cm2-geographie-les-seismes-")

    def test_bad_lines_reported_with_line_numbers(self, tmp_path):
        path = write_lines(tmp_path / "docs.jsonl", [
            "{oops",
            "42",
            json.dumps({"id": "d3", "content": "x", "level": "licence", "subject": "maths"}),
            json.dumps({"id": "d4", "content": "Bon.", "level": "cp", "subject": "francais"}),
        ])

        documents, errors = load_documents_jsonl(path)

        assert [d.id for d in documents] == ["d4"]
        assert errors[0].startswith("line 1: invalid JSON")
        assert errors[1] == "line 2: expected an object"
        assert errors[2] == "line 3: invalid document (level)"
