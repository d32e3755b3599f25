"""Tests for the stored-inventory audit."""
from question_bank.quota_generation.auditor import InventoryAuditor

from conftest import PRODUCT


class TestAuditSection:
    def test_findings(self, store, config):
        original = store.add("practice_1", "Mathematics", "Algebra", 1,
                             question_text="What is 12 times 5?")
        duplicate = store.add("practice_2", "Mathematics", "Algebra", 2,
                              question_text="What is 5 times 12?")
        leaked = store.add("practice_1", "Mathematics", "Geometry", 1,
                           solution_text="Area is 20. Wait, let me recalculate. Area is 24.")
        wordy = store.add("practice_1", "Mathematics", "Fractions", 1,
                          solution_text=" ".join(["step"] * 250))
        store.add("practice_1", "Mathematics", "Geometry", 2,
                  question_text="What is 5 times 12?")

        report = InventoryAuditor(store, config).audit_section(PRODUCT, "Mathematics")

        assert report.scanned == 5
        by_id = {f.record_id: f for f in report.findings}
        assert by_id[duplicate].kind == "duplicate"
        assert by_id[duplicate].related_id == original
        assert by_id[leaked].kind == "artifact"
        assert "[severity=high]" in by_id[leaked].reason
        assert by_id[wordy].kind == "review"
        assert report.count("duplicate") == 1
        assert original not in by_id
        assert set(report.deletion_ids) == {duplicate, leaked}

    def test_restricted_to_test_mode(self, store, config):
        store.add("practice_1", "Mathematics", "Algebra", 1, question_text="What is 12 times 5?")
        store.add("practice_2", "Mathematics", "Algebra", 2, question_text="What is 5 times 12?")

        report = InventoryAuditor(store, config).audit_section(PRODUCT, "Mathematics", "practice_1")
        assert report.scanned == 1
        assert report.findings == []

    def test_delete_findings(self, store, config):
        store.add("practice_1", "Mathematics", "Algebra", 1, question_text="What is 12 times 5?")
        duplicate = store.add("practice_1", "Mathematics", "Algebra", 1,
                              question_text="What is 12 times 5?")
        auditor = InventoryAuditor(store, config)

        deleted = auditor.delete_findings(auditor.audit_section(PRODUCT, "Mathematics"))

        assert deleted == 1
        assert store.deleted == [duplicate]

    def test_delete_in_dry_run(self, store, config):
        store.add("practice_1", "Mathematics", "Algebra", 1, question_text="What is 12 times 5?")
        store.add("practice_1", "Mathematics", "Algebra", 1, question_text="What is 12 times 5?")
        config.dry_run = True
        auditor = InventoryAuditor(store, config)

        assert auditor.delete_findings(auditor.audit_section(PRODUCT, "Mathematics")) == 0
        assert store.deleted == []
