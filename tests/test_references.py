"""
Tests for execution/regulation_rag/references.py

Covers: Reference labels, Dutch article/table detection, ordering and
        de-duplication, mention patterns, pluggable detectors.
"""

import pytest


class TestReference:
    """Tests for the Reference value type."""

    def test_labels(self):
        from execution.regulation_rag.references import Reference, TABLE, ARTICLE
        assert Reference(TABLE, "4.162").label == "Tabel 4.162"
        assert str(Reference(ARTICLE, "4.164")) == "Artikel 4.164"

    def test_hashable_and_equal(self):
        from execution.regulation_rag.references import Reference, TABLE
        assert Reference(TABLE, "4.162") == Reference(TABLE, "4.162")
        assert len({Reference(TABLE, "4.162"), Reference(TABLE, "4.162")}) == 1


class TestDutchLegalReferenceDetector:
    """Bouwbesluit citation grammar."""

    def test_detects_tables_before_articles(self):
        from execution.regulation_rag.references import DutchLegalReferenceDetector
        from tests.conftest import ARTICLE_4_164
        refs = DutchLegalReferenceDetector().detect_references(ARTICLE_4_164)
        assert [r.label for r in refs] == ["Tabel 4.162", "Artikel 4.164"]

    def test_abbreviation_and_case(self):
        from execution.regulation_rag.references import DutchLegalReferenceDetector
        refs = DutchLegalReferenceDetector().detect_references("zie art. 2.1 en TABEL 3.4")
        assert [r.label for r in refs] == ["Tabel 3.4", "Artikel 2.1"]

    def test_duplicates_collapsed(self):
        from execution.regulation_rag.references import DutchLegalReferenceDetector
        refs = DutchLegalReferenceDetector().detect_references(
            "tabel 4.162, tabel 4.162 en nogmaals Tabel 4.162"
        )
        assert len(refs) == 1

    @pytest.mark.parametrize("text", ["", "artikel 4", "tabel 12", "Artikelen 4.1"])
    def test_no_reference(self, text):
        from execution.regulation_rag.references import DutchLegalReferenceDetector
        assert DutchLegalReferenceDetector().detect_references(text) == []

    def test_query_for_is_label(self):
        from execution.regulation_rag.references import DutchLegalReferenceDetector, Reference, TABLE
        assert DutchLegalReferenceDetector().query_for(Reference(TABLE, "4.162")) == "Tabel 4.162"

    def test_mention_pattern_respects_number_boundary(self):
        from execution.regulation_rag.references import DutchLegalReferenceDetector, Reference, ARTICLE
        pattern = DutchLegalReferenceDetector().mention_pattern(Reference(ARTICLE, "4.16"))
        assert pattern.search("zie artikel 4.16 lid 2")
        assert pattern.search("art. 4.16")
        assert not pattern.search("artikel 4.164")

    def test_mention_pattern_kind_specific(self):
        from execution.regulation_rag.references import DutchLegalReferenceDetector, Reference, TABLE
        pattern = DutchLegalReferenceDetector().mention_pattern(Reference(TABLE, "4.162"))
        assert pattern.search("Tabel 4.162 Afmetingen")
        assert not pattern.search("Artikel 4.162")


class TestCustomDetector:
    """Detectors for other corpora plug into the same interface."""

    def test_abstract_base_not_instantiable(self):
        from execution.regulation_rag.references import ReferenceDetector
        with pytest.raises(TypeError):
            ReferenceDetector()

    def test_subclass_uses_default_helpers(self):
        import re
        from execution.regulation_rag.references import ReferenceDetector, Reference

        class SectionDetector(ReferenceDetector):
            def detect_references(self, text):
                return [Reference("section", m) for m in re.findall(r"§\s*(\d+)", text)]

        detector = SectionDetector()
        refs = detector.detect_references("zie § 12")
        assert refs[0].label == "Section 12"
        assert detector.query_for(refs[0]) == "Section 12"
        assert detector.mention_pattern(refs[0]).search("section 12 of the code")
