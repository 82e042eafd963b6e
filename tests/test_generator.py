"""Tests for build-definition generation and diff-safe emission."""

import json
import os

import pytest

from lpkg import record as rec
from lpkg.errors import NotReadyError, SchemaViolation
from lpkg.generator import (
    Generator,
    artifact_path,
    build_definition,
    compute_flags,
    is_hand_edited,
    module_book,
    module_name,
    module_prefix,
    render_artifact,
)


@pytest.fixture
def gen(tmp_path):
    return Generator(output_dir=tmp_path / "out")


class TestNaming:
    @pytest.mark.parametrize("record_id,expected", [
        ("lfs/binutils", "binutils"),
        ("lfs/binutils-pass-1", "binutils_pass_1"),
        ("lfs/xml-parser", "xml_parser"),
        ("blfs/7zip", "p7zip"),
        ("lfs/libstdc++", "libstdc__"),
    ])
    def test_module_name(self, record_id, expected) -> None:
        assert module_name(record_id) == expected

    def test_variant_missing_from_id_is_appended(self) -> None:
        assert module_name("lfs/gcc", "Pass 1") == "gcc_pass_1"
        assert module_name("lfs/gcc-pass-1", "Pass 1") == "gcc_pass_1"
        assert module_name("lfs/gcc", None) == "gcc"

    def test_book(self) -> None:
        assert module_book("mlfs/binutils") == "mlfs"
        assert module_book("binutils") == "_"

    def test_prefix(self) -> None:
        assert module_prefix("binutils") == "bi"
        assert module_prefix("x") == "xk"
        assert module_prefix("") == "pk"


class TestFlags:
    def test_explicit_flags_are_deduplicated(self) -> None:
        flags = compute_flags({"enable_lto": True, "enable_pgo": False,
                               "cflags": ["-O3", "-flto", "-O3"], "ldflags": ["-flto"]})
        assert flags["cflags"] == ["-O3", "-flto"]
        assert flags["ldflags"] == ["-flto"]

    def test_defaults_when_empty(self) -> None:
        flags = compute_flags({"enable_lto": True, "enable_pgo": True, "opt_level": "2",
                               "cflags": [], "ldflags": [], "profdata": None})
        assert flags["cflags"] == ["-O2", "-flto", "-fprofile-generate"]
        assert flags["ldflags"] == ["-flto", "-fprofile-generate"]

    def test_profile_use_with_profdata(self) -> None:
        flags = compute_flags({"enable_lto": False, "enable_pgo": True, "cflags": [], "ldflags": [],
                               "profdata": "/var/pgo/gcc.profdata"})
        assert flags["cflags"] == ["-O3", "-fprofile-use"]
        assert flags["ldflags"] == ["-fprofile-use"]


class TestBuildDefinition:
    def test_translation(self, record_factory) -> None:
        r = record_factory(variant="Pass 2", commands=[["make"], ["make install"]],
                           deps=["lfs/gcc-pass-1"])
        r["dependencies"]["runtime"] = ["lfs/zlib", "lfs/gcc-pass-1"]
        r["environment"]["variables"] = [{"name": "LC_ALL", "value": "POSIX"}]
        d = build_definition(r)

        assert d.id == "lfs/binutils-pass-2"
        assert (d.module, d.prefix) == ("binutils_pass_2", "bi")
        assert d.variant == "Pass 2"
        assert [p["commands"] for p in d.phases] == [["make"], ["make install"]]
        assert d.dependencies == ["lfs/gcc-pass-1", "lfs/zlib"]
        assert d.environment == {"LC_ALL": "POSIX"}
        assert d.key == "lfs/binutils-pass-2@Pass 2"

    @pytest.mark.parametrize("state", [rec.STATE_DRAFT, rec.STATE_ISSUES_OPEN])
    def test_not_ready_is_refused(self, record_factory, state) -> None:
        with pytest.raises(NotReadyError):
            build_definition(record_factory(state=state))

    def test_deterministic(self, record_factory) -> None:
        r = record_factory()
        a = render_artifact(build_definition(r), r)
        b = render_artifact(build_definition(json.loads(json.dumps(r))), r)
        assert a == b
        doc = json.loads(a)
        assert doc["header"]["generator"] == "lpkg-generator"
        assert doc["header"]["schema_version"] == "v0.1.0"
        assert doc["header"]["record_hash"] == rec.record_hash(r)
        assert a.endswith("}\n")


class TestGenerate:
    def test_create_then_unchanged_without_writes(self, gen, tmp_path, record_factory) -> None:
        r = record_factory()
        first = gen.generate(r)
        target = tmp_path / "out" / "lfs" / "bi" / "binutils" / "definition.json"

        assert first["action"] == "created"
        assert first["path"] == str(target)
        mtime = os.stat(target).st_mtime_ns
        inode = os.stat(target).st_ino

        second = gen.generate(r)

        assert second["action"] == "unchanged"
        assert second["diff"] == ""
        assert os.stat(target).st_mtime_ns == mtime
        assert os.stat(target).st_ino == inode
        assert not list(target.parent.glob(".staging.*"))

    def test_changed_record_rewrites_only_its_artifact(self, gen, tmp_path, record_factory) -> None:
        binutils, bash = record_factory(), record_factory("bash", "5.2.21")
        gen.generate(binutils)
        gen.generate(bash)
        bash_target = tmp_path / "out" / "lfs" / "ba" / "bash" / "definition.json"
        bash_inode = os.stat(bash_target).st_ino

        binutils["build"][0]["commands"] = ["make -j4"]
        report = gen.generate_many([binutils, bash])

        assert [i["action"] for i in report["items"]] == ["updated", "unchanged"]
        assert "make -j4" in report["items"][0]["diff"]
        assert os.stat(bash_target).st_ino == bash_inode

    def test_not_ready_writes_nothing(self, gen, tmp_path, record_factory) -> None:
        with pytest.raises(NotReadyError):
            gen.generate(record_factory(state=rec.STATE_DRAFT))
        assert not (tmp_path / "out").exists()

    def test_invalid_ready_record_is_refused(self, gen, tmp_path, record_factory) -> None:
        r = record_factory()
        r["source"]["urls"] = []
        with pytest.raises(SchemaViolation):
            gen.generate(r)
        assert not (tmp_path / "out").exists()

    def test_dry_run_never_touches_target(self, gen, tmp_path, record_factory) -> None:
        r = record_factory()
        report = gen.generate(r, dry_run=True)
        assert report["action"] == "would-create"
        assert report["diff"].startswith("---")
        assert not (tmp_path / "out").exists()

        gen.generate(r)
        r["build"][0]["commands"] = ["make check"]
        target = artifact_path(tmp_path / "out", build_definition(r))
        before = target.read_text(encoding="utf-8")
        report = gen.generate(r, dry_run=True)
        assert report["action"] == "would-update"
        assert target.read_text(encoding="utf-8") == before

    def test_hand_edit_needs_overwrite(self, gen, tmp_path, record_factory) -> None:
        r = record_factory()
        target = tmp_path / "out" / "lfs" / "bi" / "binutils" / "definition.json"
        gen.generate(r)
        doc = json.loads(target.read_text(encoding="utf-8"))
        doc["definition"]["phases"][0]["commands"] = ["make CFLAGS=-O0"]
        edited = json.dumps(doc, indent=2)
        target.write_text(edited, encoding="utf-8")
        assert is_hand_edited(target)

        report = gen.generate(r)
        assert report["action"] == "conflict"
        assert report["ok"] is False
        assert target.read_text(encoding="utf-8") == edited

        report = gen.generate(r, overwrite=True)
        assert report["action"] == "updated"
        assert not is_hand_edited(target)

    def test_generate_from_metadata_path(self, gen, store, record_factory) -> None:
        path = store.put("lfs/binutils", record_factory())
        report = gen.generate_many([str(path), str(path.with_name("missing.json"))])
        assert report["items"][0]["action"] == "created"
        assert report["items"][1]["state"] == "failed"
        assert (report["succeeded"], report["failed"]) == (1, 1)

    def test_same_slug_in_two_books_does_not_collide(self, gen, tmp_path, record_factory) -> None:
        records = [record_factory(), record_factory(book="mlfs")]
        first = gen.generate_many(records)
        assert [i["action"] for i in first["items"]] == ["created", "created"]
        assert [i["path"] for i in first["items"]] == [
            str(tmp_path / "out" / "lfs" / "bi" / "binutils" / "definition.json"),
            str(tmp_path / "out" / "mlfs" / "bi" / "binutils" / "definition.json"),
        ]

        second = gen.generate_many(records)
        assert [i["action"] for i in second["items"]] == ["unchanged", "unchanged"]

    def test_variants_of_one_id_get_their_own_artifact(self, gen, record_factory) -> None:
        records = [record_factory("gcc", "13.2.0", "Pass 1"), record_factory("gcc", "13.2.0", "Pass 2")]
        for r in records:
            r["package"]["id"] = "lfs/gcc"
        paths = [gen.generate(r)["path"] for r in records]
        assert paths[0].endswith("gc/gcc_pass_1/definition.json")
        assert paths[1].endswith("gc/gcc_pass_2/definition.json")
        assert [gen.generate(r)["action"] for r in records] == ["unchanged", "unchanged"]

    def test_undecodable_target_is_a_conflict(self, gen, tmp_path, record_factory) -> None:
        r = record_factory()
        target = tmp_path / "out" / "lfs" / "bi" / "binutils" / "definition.json"
        gen.generate(r)
        target.write_bytes(b"\xff\xfe garbage")

        report = gen.generate_many([r])
        item = report["items"][0]
        assert (item["action"], item["ok"], report["failed"]) == ("conflict", False, 1)
        assert target.read_bytes() == b"\xff\xfe garbage"

        assert gen.generate(r, overwrite=True)["action"] == "updated"
        assert not is_hand_edited(target)


class TestStructurallyBrokenReadyRecords:
    def test_translation_refuses_before_reading_fields(self, record_factory) -> None:
        r = record_factory()
        r["source"]["urls"] = [{"url": "https://ftp.example.org/binutils-2.41.tar.xz"}]
        with pytest.raises(SchemaViolation, match="kind"):
            build_definition(r)

    @pytest.mark.parametrize("section,value", [
        ("source", ["oops"]),
        ("dependencies", "lfs/zlib"),
        ("environment", {"variables": [{"value": "POSIX"}]}),
        ("build", {"phase": "build"}),
    ])
    def test_batch_keeps_going(self, gen, record_factory, section, value) -> None:
        broken = record_factory("zlib", "1.3.1")
        broken[section] = value
        report = gen.generate_many([broken, record_factory()])

        assert (report["succeeded"], report["failed"]) == (1, 1)
        bad, good = report["items"]
        assert (bad["item"], bad["error_type"]) == ("lfs/zlib", "SchemaViolation")
        assert good["action"] == "created"
