"""Tests for the Source Resolver."""

from lpkg import record as rec
from lpkg.manifest import ManifestEntry
from lpkg.resolver import find_matches, match_key, resolve, resolve_many, strip_variant

URL1 = "https://sourceware.org/pub/binutils/releases/binutils-2.41.tar.xz"
MD5 = "256d7e0ad998e423030c84483a7c1e30"


def _entries():
    return [
        ManifestEntry("binutils-2.41", URL1, "binutils-2.41.tar.xz", {"alg": "md5", "value": MD5}),
        ManifestEntry("bash-5.2.21", "https://ftp.gnu.org/gnu/bash/bash-5.2.21.tar.gz", "bash-5.2.21.tar.gz", None),
    ]


def _draft(name="binutils", version="2.41", variant=None):
    return rec.new_record("lfs", name, version, variant)


class TestMatching:
    def test_pass_suffix_is_not_part_of_the_version(self) -> None:
        assert strip_variant("2.41-pass-1") == "2.41"
        assert strip_variant("2.41 (Pass 2)") == "2.41"
        assert strip_variant("2.41") == "2.41"

    def test_match_key_ignores_variant(self) -> None:
        assert match_key(_draft(variant="Pass 1")) == "binutils-2.41"
        assert match_key(_draft("GCC", "13.2.0")) == "gcc-13.2.0"

    def test_patches_match_by_prefix(self) -> None:
        patch = ManifestEntry("bzip2-1.0.8-install_docs-1", "https://x/bzip2-1.0.8-install_docs-1.patch",
                              "bzip2-1.0.8-install_docs-1.patch", None)
        archive = ManifestEntry("bzip2-1.0.8", "https://x/bzip2-1.0.8.tar.gz", "bzip2-1.0.8.tar.gz", None)
        archives, patches = find_matches("bzip2-1.0.8", [patch, archive])
        assert archives == [archive]
        assert patches == [patch]


class TestResolve:
    def test_single_match_yields_url_and_checksum(self) -> None:
        record = _draft()
        out, issues = resolve(record, _entries())

        assert issues == []
        assert out["source"]["urls"] == [{"url": URL1, "kind": "primary"}]
        assert out["source"]["checksums"] == [{"alg": "md5", "value": MD5, "filename": "binutils-2.41.tar.xz"}]
        assert out["source"]["archive"] == "binutils-2.41.tar.xz"
        assert out["status"]["issues"] == []
        # input untouched
        assert record["source"]["urls"] == []

    def test_variant_record_resolves_against_base_version(self) -> None:
        out, issues = resolve(_draft(variant="Pass 1"), _entries())
        assert issues == []
        assert [u["url"] for u in out["source"]["urls"]] == [URL1]
        assert rec.record_id(out) == "lfs/binutils-pass-1"

    def test_zero_matches_records_one_unresolved_issue(self) -> None:
        out, issues = resolve(_draft("nosuch", "1.0"), _entries())

        assert out["source"]["urls"] == []
        assert [i.kind for i in issues] == ["unresolved-source"]
        assert [i["kind"] for i in out["status"]["issues"]] == ["unresolved-source"]
        assert out["status"]["state"] == rec.STATE_DRAFT

    def test_resolving_twice_does_not_duplicate(self) -> None:
        once, _ = resolve(_draft("nosuch", "1.0"), _entries())
        twice, _ = resolve(once, _entries())
        assert len(twice["status"]["issues"]) == 1

        ok, _ = resolve(_draft(), _entries())
        again, _ = resolve(ok, _entries())
        assert len(again["source"]["urls"]) == 1
        assert len(again["source"]["checksums"]) == 1

    def test_multiple_mirrors_all_become_sources(self) -> None:
        mirror = ManifestEntry("binutils-2.41", "https://mirror.example.org/binutils-2.41.tar.xz",
                               "binutils-2.41.tar.xz", {"alg": "md5", "value": MD5})
        out, _ = resolve(_draft(), _entries() + [mirror])
        assert len(out["source"]["urls"]) == 2
        assert len(out["source"]["checksums"]) == 1

    def test_inline_links_take_precedence(self) -> None:
        record = _draft()
        inline = "https://inline.example.org/binutils-2.41.tar.xz"
        record["source"]["urls"] = [{"url": inline, "kind": "primary"}]

        out, issues = resolve(record, _entries())

        assert issues == []
        assert [u["url"] for u in out["source"]["urls"]] == [inline]
        # checksum still comes from the manifest, paired by filename
        assert out["source"]["checksums"][0]["value"] == MD5

    def test_ready_records_are_left_alone(self) -> None:
        record = _draft("nosuch", "1.0")
        record["status"]["state"] = rec.STATE_READY
        out, issues = resolve(record, _entries())
        assert out == record
        assert issues == []


def test_resolve_many_reports_each_record() -> None:
    results = resolve_many([_draft(), _draft("nosuch", "1.0")], _entries())
    assert [r["state"] for r in results] == ["resolved", "unresolved"]
    assert all(r["ok"] for r in results)
