"""Tests for record validation and promotion."""

import json

import pytest

from lpkg import record as rec
from lpkg.validator import promote, promote_all, validate, validate_all


class TestValidate:
    def test_valid_ready_record(self, record_factory) -> None:
        result = validate(record_factory())
        assert result.ok, result.violations
        assert result.violations == []

    def test_unknown_schema_version_stops_early(self, record_factory) -> None:
        r = record_factory()
        r["schema_version"] = "v9.9.9"
        r["build"][0]["phase"] = "compile"
        result = validate(r)
        assert not result.ok
        assert [v.path for v in result.violations] == ["schema_version"]

    def test_non_object(self) -> None:
        assert not validate(["not", "a", "record"]).ok

    def test_missing_required_section(self, record_factory) -> None:
        r = record_factory()
        del r["optimizations"]
        result = validate(r)
        assert not result.ok
        assert any("optimizations" in v.message for v in result.violations)

    def test_cross_field_checks(self, record_factory) -> None:
        r = record_factory(deps=["lfs/gcc-pass-1", "Not A Ref"])
        r["build"][0]["phase"] = "compile"
        r["source"]["checksums"][0]["alg"] = "crc32"
        r["package"]["id"] = "blfs/binutils"
        paths = {v.path for v in validate(r).violations}
        assert paths == {"build.0.phase", "source.checksums.0.alg", "dependencies.build.1", "package.id"}

    def test_ready_requires_sources_and_no_issues(self, record_factory) -> None:
        r = record_factory()
        r["source"]["urls"] = []
        rec.add_issue(r, rec.Issue("unresolved-source", "source.urls", "no match"))
        paths = [v.path for v in validate(r).violations]
        assert paths == ["source.urls", "status.issues"]

    def test_draft_with_issues_is_valid(self, record_factory) -> None:
        r = record_factory(state=rec.STATE_DRAFT)
        r["source"]["urls"] = []
        rec.add_issue(r, rec.Issue("unresolved-source", "source.urls", "no match"))
        assert validate(r).ok

    def test_zero_build_phases_is_valid(self, record_factory) -> None:
        assert validate(record_factory(commands=[])).ok

    def test_validation_is_pure_and_stable(self, record_factory) -> None:
        r = record_factory()
        r["build"][0]["phase"] = "compile"
        before = json.dumps(r, sort_keys=True)
        first, second = validate(r), validate(r)
        assert first.violations == second.violations
        assert json.dumps(r, sort_keys=True) == before

    @pytest.mark.parametrize("section", ["package", "source", "dependencies", "status", "build", "environment"])
    @pytest.mark.parametrize("value", [["oops"], "oops", 7])
    def test_mistyped_section_is_reported(self, record_factory, section, value) -> None:
        r = record_factory()
        r[section] = value
        result = validate(r)
        assert not result.ok
        assert section in {v.path.split(".")[0] for v in result.violations}

    def test_mistyped_nested_lists_are_reported(self, record_factory) -> None:
        r = record_factory()
        r["source"]["checksums"] = "md5"
        r["dependencies"]["build"] = 5
        r["status"]["issues"] = "none"
        paths = {v.path for v in validate(r).violations}
        assert {"source.checksums", "dependencies.build", "status.issues"} <= paths


class TestPromote:
    def test_clean_record_becomes_ready(self, record_factory) -> None:
        draft = record_factory(state=rec.STATE_DRAFT)
        out, result = promote(draft)
        assert result.ok
        assert out["status"]["state"] == rec.STATE_READY
        assert draft["status"]["state"] == rec.STATE_DRAFT

    def test_record_with_issues_is_issues_open(self, record_factory) -> None:
        draft = record_factory(state=rec.STATE_DRAFT)
        rec.add_issue(draft, rec.Issue("missing-anchor", "package.anchors", "no anchor"))
        out, result = promote(draft)
        assert not result.ok
        assert out["status"]["state"] == rec.STATE_ISSUES_OPEN

    def test_unresolved_empty_record_stays_draft(self) -> None:
        out, _ = promote(rec.new_record("lfs", "nothing", "1.0"))
        assert out["status"]["state"] == rec.STATE_DRAFT

    def test_mistyped_status_is_replaced(self, record_factory) -> None:
        r = record_factory(state=rec.STATE_DRAFT)
        r["status"] = ["ready"]
        out, result = promote(r)
        assert not result.ok
        assert out["status"] == {"state": rec.STATE_ISSUES_OPEN, "issues": []}
        assert r["status"] == ["ready"]


class TestValidateAll:
    def test_report_over_store(self, store, record_factory) -> None:
        store.put("lfs/binutils", record_factory())
        draft = record_factory("bash", "5.2.21", state=rec.STATE_DRAFT)
        rec.add_issue(draft, rec.Issue("missing-anchor", "package.anchors", "no anchor"))
        store.put("lfs/bash", draft)
        broken = store.path_for("lfs/zlib")
        broken.write_text("{not json", encoding="utf-8")

        report = validate_all(store)

        assert report["total"] == 3
        assert report["succeeded"] == 1
        assert report["soft_issues"] == 1
        assert report["failed"] == 1
        assert report["ok"] is False
        failed = [i for i in report["items"] if not i["ok"]]
        assert failed[0]["item"].endswith("zlib.json")
        assert "error" in failed[0]

    def test_mistyped_record_does_not_abort_the_report(self, store, record_factory) -> None:
        store.put("lfs/binutils", record_factory())
        broken = record_factory("zlib", "1.3.1")
        broken["source"] = ["oops"]
        store.put("lfs/zlib", broken)

        report = validate_all(store)

        assert (report["total"], report["succeeded"], report["failed"]) == (2, 1, 1)
        bad = [i for i in report["items"] if not i["ok"]][0]
        assert bad["id"] == "lfs/zlib"
        assert any(v.startswith("source:") for v in bad["violations"])


class TestPromoteAll:
    def test_states_are_written_back(self, store, record_factory) -> None:
        store.put("lfs/binutils", record_factory(state=rec.STATE_DRAFT))
        blocked = record_factory("bash", "5.2.21", state=rec.STATE_DRAFT)
        rec.add_issue(blocked, rec.Issue("missing-anchor", "package.anchors", "no anchor"))
        store.put("lfs/bash", blocked)
        store.put("lfs/zlib", record_factory("zlib", "1.3.1"))
        store.path_for("lfs/gcc").write_text("{not json", encoding="utf-8")

        report = promote_all(store)

        by_item = {i["id"] or i["item"]: i for i in report["items"]}
        assert (by_item["lfs/binutils"]["state"], by_item["lfs/binutils"]["to"]) == ("updated", rec.STATE_READY)
        assert (by_item["lfs/bash"]["state"], by_item["lfs/bash"]["to"]) == ("updated", rec.STATE_ISSUES_OPEN)
        assert by_item["lfs/zlib"]["state"] == "unchanged"
        assert (report["succeeded"], report["soft_issues"], report["failed"]) == (2, 1, 1)

        assert rec.record_state(store.get("lfs/binutils")) == rec.STATE_READY
        assert rec.record_state(store.get("lfs/bash")) == rec.STATE_ISSUES_OPEN

    def test_second_pass_changes_nothing(self, store, record_factory) -> None:
        store.put("lfs/binutils", record_factory(state=rec.STATE_DRAFT))
        promote_all(store)
        report = promote_all(store)
        assert [i["state"] for i in report["items"]] == ["unchanged"]
