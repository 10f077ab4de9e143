import tarfile

import pytest

from wright.builder import Builder, BuildPlan
from wright.checksums import sha256_file
from wright.config import GlobalConfig
from wright.errors import BuildError, ValidationError
from wright.executor import ExecutorRegistry
from wright.lifecycle import LifecycleSpec, LifecycleStage
from wright.sources import source_cache_filename


def make_builder(tmp_path, cflags="-O2"):
    config = GlobalConfig.from_dict({
        "general": {
            "cache_dir": str(tmp_path / "cache"),
            "components_dir": str(tmp_path / "components"),
            "executors_dir": str(tmp_path / "executors"),
        },
        "build": {"build_dir": str(tmp_path / "build"), "cflags": cflags},
    })
    return Builder(config, ExecutorRegistry())


def package_plan(script='echo hi > "${PKG_DIR}/out.txt"', **kwargs):
    spec = LifecycleSpec(lifecycle={"package": LifecycleStage(script=script)})
    return BuildPlan(name="foo", version="1.0", spec=spec, **kwargs)


def test_build_key_depends_on_flags(tmp_path):
    plan = package_plan()
    first = make_builder(tmp_path, "-O2").build_key(plan)
    again = make_builder(tmp_path, "-O2").build_key(plan)
    other = make_builder(tmp_path, "-O3").build_key(plan)
    assert first == again
    assert first != other
    assert len(first) == 64


def test_fetch_copies_local_source(tmp_path):
    plan_dir = tmp_path / "plan"
    plan_dir.mkdir()
    (plan_dir / "patch.diff").write_text("diff\n")
    builder = make_builder(tmp_path)
    plan = BuildPlan(name="foo", version="1.0", uris=["patch.diff"], sha256=["SKIP"])
    builder.fetch(plan, plan_dir)
    cached = tmp_path / "cache" / "sources" / source_cache_filename("foo", "patch.diff")
    assert cached.read_text() == "diff\n"


def test_fetch_rejects_escaping_path(tmp_path):
    plan_dir = tmp_path / "plan"
    plan_dir.mkdir()
    (tmp_path / "outside.txt").write_text("x")
    plan = BuildPlan(name="foo", version="1.0", uris=["../outside.txt"], sha256=["SKIP"])
    with pytest.raises(ValidationError):
        make_builder(tmp_path).fetch(plan, plan_dir)


def _cached_source(tmp_path, uri, content=b"data"):
    path = tmp_path / "cache" / "sources" / source_cache_filename("foo", uri)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(content)
    return path


def test_verify_accepts_matching_hash(tmp_path):
    uri = "https://example.com/foo-1.0.tar.gz"
    path = _cached_source(tmp_path, uri)
    plan = BuildPlan(name="foo", version="1.0", uris=[uri], sha256=[sha256_file(path)])
    assert make_builder(tmp_path).verify(plan) == [path]


def test_verify_rejects_mismatch(tmp_path):
    uri = "https://example.com/foo-1.0.tar.gz"
    _cached_source(tmp_path, uri)
    plan = BuildPlan(name="foo", version="1.0", uris=[uri], sha256=["0" * 64])
    with pytest.raises(ValidationError):
        make_builder(tmp_path).verify(plan)


def test_verify_expands_uri_variables(tmp_path):
    uri = "https://example.com/${PKG_NAME}-${PKG_VERSION}.tar.gz"
    path = _cached_source(tmp_path, "https://example.com/foo-1.0.tar.gz")
    plan = BuildPlan(name="foo", version="1.0", uris=[uri], sha256=[sha256_file(path)])
    assert make_builder(tmp_path).verify(plan) == [path]


def test_extract_archive_and_plain_file(tmp_path):
    uri = "https://example.com/foo-1.0.tar.gz"
    payload = tmp_path / "payload" / "foo-1.0"
    payload.mkdir(parents=True)
    (payload / "README").write_text("readme")
    archive = tmp_path / "cache" / "sources" / source_cache_filename("foo", uri)
    archive.parent.mkdir(parents=True)
    with tarfile.open(archive, "w:gz") as tar:
        tar.add(payload, arcname="foo-1.0")
    _cached_source(tmp_path, "https://example.com/config", b"cfg")

    plan = BuildPlan(name="foo", version="1.0", uris=[uri, "https://example.com/config"])
    dest = tmp_path / "src"
    dest.mkdir()
    files = tmp_path / "files"
    build_dir = make_builder(tmp_path).extract(plan, dest, files)
    assert build_dir == dest / "foo-1.0"
    assert (build_dir / "README").read_text() == "readme"
    assert (files / "config").read_bytes() == b"cfg"


def test_build_runs_package_stage(tmp_path):
    result = make_builder(tmp_path).build(package_plan(), tmp_path)
    assert (result.pkg_dir / "out.txt").read_text() == "hi\n"
    assert (result.log_dir / "package.log").exists()


def test_build_uses_cache_on_second_run(tmp_path):
    counter = tmp_path / "counter"
    plan = package_plan(f'echo x >> "{counter}"; echo hi > "${{PKG_DIR}}/out.txt"')
    builder = make_builder(tmp_path)
    builder.build(plan, tmp_path)
    result = builder.build(plan, tmp_path)
    assert counter.read_text() == "x\n"
    assert (result.pkg_dir / "out.txt").read_text() == "hi\n"


def test_force_bypasses_cache(tmp_path):
    counter = tmp_path / "counter"
    plan = package_plan(f'echo x >> "{counter}"')
    builder = make_builder(tmp_path)
    builder.build(plan, tmp_path)
    builder.build(plan, tmp_path, force=True)
    assert counter.read_text() == "x\nx\n"


def test_clean_removes_workspace_and_cache(tmp_path):
    plan = package_plan()
    builder = make_builder(tmp_path)
    result = builder.build(plan, tmp_path)
    cache_file = tmp_path / "cache" / "builds" / f"foo-{builder.build_key(plan)}.tar.zst"
    assert cache_file.exists()
    builder.clean(plan)
    assert not cache_file.exists()
    assert not result.build_dir.exists()


def test_failing_stage_raises(tmp_path):
    with pytest.raises(BuildError):
        make_builder(tmp_path).build(package_plan("exit 3"), tmp_path)


def test_stage_requires_previous_build(tmp_path):
    with pytest.raises(BuildError):
        make_builder(tmp_path).build(package_plan(), tmp_path, stages=["package"])


def test_fetch_only_skips_lifecycle(tmp_path):
    result = make_builder(tmp_path).build(package_plan(), tmp_path, fetch_only=True)
    assert result.pkg_dir.is_dir()
    assert not (result.pkg_dir / "out.txt").exists()


def test_split_package(tmp_path):
    split_script = 'test -d "${MAIN_PKG_DIR}"; echo doc > "${PKG_DIR}/doc.txt"'
    plan = package_plan(splits={"foo-doc": {"package": LifecycleStage(script=split_script)}})
    result = make_builder(tmp_path).build(plan, tmp_path)
    assert (result.split_pkg_dirs["foo-doc"] / "doc.txt").read_text() == "doc\n"


def test_split_without_package_stage(tmp_path):
    plan = package_plan(splits={"foo-doc": {}})
    with pytest.raises(ValidationError):
        make_builder(tmp_path).build(plan, tmp_path)


def test_update_hashes_marks_local_sources_skip(tmp_path):
    manifest = tmp_path / "plan.toml"
    manifest.write_text(
        '# keep me\n[sources]\nuris = [\n  "patch.diff",\n]\nsha256 = [\n  "old",\n]\n'
    )
    plan = BuildPlan(name="foo", version="1.0", uris=["patch.diff"])
    hashes = make_builder(tmp_path).update_hashes(plan, manifest)
    content = manifest.read_text()
    assert hashes == ["SKIP"]
    assert '"SKIP"' in content
    assert '"old"' not in content
    assert content.startswith("# keep me\n")