import zipfile
from datetime import timedelta

import pytest

from pdftools_backend.bundles import BundleItem, build_bundle, dedupe_name, write_bundle_archive
from pdftools_backend.jobs import EmptyBundleError, JobNotFound, resolve_download


@pytest.fixture
def out_dir(tmp_path):
    path = tmp_path / "out"
    path.mkdir()
    return path


def _entries(path):
    with zipfile.ZipFile(path) as zf:
        return {name: zf.read(name) for name in zf.namelist()}


def test_dedupe_name():
    assert dedupe_name("a.pdf", set()) == "a.pdf"
    assert dedupe_name("a.pdf", {"a.pdf"}) == "a (2).pdf"
    assert dedupe_name("a.pdf", {"a.pdf", "a (2).pdf"}) == "a (3).pdf"
    assert dedupe_name("README", {"README"}) == "README (2)"


def test_bundle_keeps_only_valid_items(registry, clock, make_artifact, out_dir):
    a = registry.register("a", make_artifact("a.pdf", b"AAA"), filename="a.pdf")
    b = registry.register("b", make_artifact("b.pdf", b"BBB"), filename="b.pdf")
    c = registry.register("c", make_artifact("c.pdf", b"CCC"), timedelta(seconds=1), filename="c.pdf")
    clock.advance(5000)

    bundle = build_bundle(
        registry,
        [
            BundleItem("a", a.token),
            BundleItem("b", "wrong-token"),
            BundleItem("c", c.token),
        ],
        out_dir,
    )

    assert bundle.count == 1
    record = bundle.record
    assert record.job_id.startswith("zip_")
    assert record.job_id not in {"a", "b", "c"}
    assert record.token not in {a.token, b.token, c.token}
    assert record.kind == "archive"
    assert record.expires_at == clock() + 15 * 60 * 1000
    assert _entries(record.artifact_path) == {"a.pdf": b"AAA"}

    dl = resolve_download(registry, record.job_id, record.token)
    dl.stream.close()
    assert dl.content_type == "application/zip"


def test_bundle_does_not_extend_source_expiry(registry, make_artifact, out_dir):
    a = registry.register("a", make_artifact("a.pdf"), timedelta(seconds=60))
    build_bundle(registry, [BundleItem("a", a.token)], out_dir, timedelta(hours=1))
    assert registry.lookup("a").expires_at == a.expires_at


def test_bundle_suffixes_colliding_filenames(registry, make_artifact, out_dir):
    a = registry.register("a", make_artifact("one.pdf", b"1"), filename="merged.pdf")
    b = registry.register("b", make_artifact("two.pdf", b"2"), filename="merged.pdf")

    bundle = build_bundle(registry, [BundleItem("a", a.token), BundleItem("b", b.token)], out_dir)

    assert bundle.count == 2
    assert _entries(bundle.record.artifact_path) == {"merged.pdf": b"1", "merged (2).pdf": b"2"}


def test_bundle_ignores_repeated_items(registry, make_artifact, out_dir):
    a = registry.register("a", make_artifact("a.pdf"))
    bundle = build_bundle(registry, [BundleItem("a", a.token), BundleItem("a", a.token)], out_dir)
    assert bundle.count == 1


def test_bundle_skips_items_whose_file_is_gone(registry, make_artifact, out_dir):
    path = make_artifact("a.pdf")
    a = registry.register("a", path)
    b = registry.register("b", make_artifact("b.pdf"))
    path.unlink()

    bundle = build_bundle(registry, [BundleItem("a", a.token), BundleItem("b", b.token)], out_dir)
    assert bundle.count == 1


@pytest.mark.parametrize("items", [[], [BundleItem("missing", "x")]])
def test_empty_bundle_registers_nothing(registry, make_artifact, out_dir, items):
    registry.register("a", make_artifact("a.pdf"))
    before = registry.job_ids()

    with pytest.raises(EmptyBundleError):
        build_bundle(registry, items, out_dir)

    assert registry.job_ids() == before
    assert list(out_dir.iterdir()) == []


def test_empty_bundle_reads_as_not_found(registry, out_dir):
    with pytest.raises(JobNotFound):
        build_bundle(registry, [], out_dir)


def test_archive_is_renamed_into_place(tmp_path, registry, make_artifact):
    record = registry.register("a", make_artifact("a.pdf", b"A"))
    dest = tmp_path / "bundle.zip"

    assert write_bundle_archive(dest, [record]) == 1
    assert dest.is_file()
    assert not dest.with_name("bundle.zip.part").exists()


def test_archive_not_written_when_every_source_vanished(tmp_path, registry, make_artifact):
    path = make_artifact("a.pdf")
    record = registry.register("a", path)
    path.unlink()
    dest = tmp_path / "bundle.zip"

    assert write_bundle_archive(dest, [record]) == 0
    assert not dest.exists()
    assert not dest.with_name("bundle.zip.part").exists()
