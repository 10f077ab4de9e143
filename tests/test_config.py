from pathlib import Path

import pytest

from wright import config
from wright.config import (
    AssembliesConfig,
    BuildConfig,
    GeneralConfig,
    GlobalConfig,
    NetworkConfig,
    RepoConfig,
    default_general,
    merge_toml,
    xdg_config_path,
)
from wright.errors import ConfigError


@pytest.fixture
def non_root(monkeypatch):
    monkeypatch.setattr(config.os, "getuid", lambda: 1000, raising=False)


@pytest.fixture
def root(monkeypatch):
    monkeypatch.setattr(config.os, "getuid", lambda: 0, raising=False)


def test_build_and_network_defaults():
    build = BuildConfig()
    assert build.build_dir == Path("/tmp/wright-build")
    assert build.default_dockyard == "strict"
    assert build.cflags == "-O2 -pipe -march=x86-64"
    assert build.strip is True
    assert build.ccache is False
    assert build.dockyards == 0
    assert build.max_cpus is None
    network = NetworkConfig()
    assert network.download_timeout == 300
    assert network.retry_count == 3


def test_merge_toml_nested_tables():
    base = {"a": {"x": 1, "y": 2}, "b": [1, 2], "c": "keep"}
    overlay = {"a": {"y": 3}, "b": [3]}
    assert merge_toml(base, overlay) == {"a": {"x": 1, "y": 3}, "b": [3], "c": "keep"}


def test_merge_toml_scalar_replaces_table():
    assert merge_toml({"a": {"x": 1}}, {"a": 5}) == {"a": 5}
    assert merge_toml(1, {"k": "v"}) == {"k": "v"}


def test_default_general_root_uses_system_dirs(root):
    general = default_general()
    assert general.cache_dir == Path("/var/lib/wright/cache")
    assert general.log_dir == Path("/var/log/wright")


def test_default_general_user_uses_xdg(non_root, monkeypatch, tmp_path):
    monkeypatch.setenv("XDG_CACHE_HOME", str(tmp_path / "cache"))
    monkeypatch.setenv("XDG_STATE_HOME", str(tmp_path / "state"))
    general = default_general()
    assert general.cache_dir == tmp_path / "cache" / "wright"
    assert general.log_dir == tmp_path / "state" / "wright"
    assert general.db_path == Path("/var/lib/wright/db/packages.db")


def test_default_general_user_falls_back_to_home(non_root, monkeypatch, tmp_path):
    monkeypatch.delenv("XDG_CACHE_HOME", raising=False)
    monkeypatch.setenv("HOME", str(tmp_path))
    assert default_general().cache_dir == tmp_path / ".cache" / "wright"


def test_xdg_config_path(non_root, monkeypatch, tmp_path):
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path))
    assert xdg_config_path() == tmp_path / "wright" / "wright.toml"


def test_xdg_config_path_root(root):
    assert xdg_config_path() is None


def test_from_dict_partial_general_uses_system_defaults(non_root, monkeypatch, tmp_path):
    monkeypatch.setenv("XDG_CACHE_HOME", str(tmp_path))
    cfg = GlobalConfig.from_dict({"general": {"arch": "aarch64"}, "build": {"dockyards": 4}})
    assert cfg.general.arch == "aarch64"
    assert cfg.general.cache_dir == Path("/var/lib/wright/cache")
    assert cfg.build.dockyards == 4
    assert cfg.build.cflags == BuildConfig().cflags


def test_from_dict_rejects_wrong_types():
    with pytest.raises(ConfigError):
        GlobalConfig.from_dict({"build": {"strip": "yes"}})
    with pytest.raises(ConfigError):
        GlobalConfig.from_dict({"network": {"retry_count": -1}})
    with pytest.raises(ConfigError):
        GlobalConfig.from_dict({"general": "nope"})


def test_load_explicit_missing_returns_defaults(tmp_path):
    assert GlobalConfig.load(tmp_path / "absent.toml") == GlobalConfig()


def test_load_explicit_file(tmp_path):
    path = tmp_path / "custom.toml"
    path.write_text('[general]\nplans_dir = "/srv/plans"\n[build]\nmax_cpus = 8\n')
    cfg = GlobalConfig.load(path)
    assert cfg.general.plans_dir == Path("/srv/plans")
    assert cfg.build.max_cpus == 8


def test_load_invalid_toml(tmp_path):
    path = tmp_path / "bad.toml"
    path.write_text("[build\n")
    with pytest.raises(ConfigError):
        GlobalConfig.load(path)


def test_layered_load(non_root, monkeypatch, tmp_path):
    system = tmp_path / "system.toml"
    system.write_text('[general]\narch = "x86_64"\n[build]\ncflags = "-O3"\nccache = true\n')
    monkeypatch.setattr(config, "SYSTEM_CONFIG_PATH", system)
    xdg = tmp_path / "xdg"
    (xdg / "wright").mkdir(parents=True)
    (xdg / "wright" / "wright.toml").write_text("[build]\ndockyards = 2\n")
    monkeypatch.setenv("XDG_CONFIG_HOME", str(xdg))
    project = tmp_path / "project"
    project.mkdir()
    (project / "wright.toml").write_text('[build]\ncflags = "-Os"\n')
    monkeypatch.chdir(project)

    cfg = GlobalConfig.load()
    assert cfg.build.cflags == "-Os"
    assert cfg.build.ccache is True
    assert cfg.build.dockyards == 2
    assert cfg.general.arch == "x86_64"


def test_layered_load_without_files(non_root, monkeypatch, tmp_path):
    monkeypatch.setattr(config, "SYSTEM_CONFIG_PATH", tmp_path / "none.toml")
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg"))
    monkeypatch.chdir(tmp_path)
    assert GlobalConfig.load() == GlobalConfig()


def test_repo_config_load(tmp_path):
    assert RepoConfig.load(tmp_path / "missing.toml").source == []
    path = tmp_path / "repos.toml"
    path.write_text(
        '[[source]]\nname = "local"\ntype = "local"\npath = "/srv/repo"\n'
        '[[source]]\nname = "remote"\ntype = "http"\nurl = "https://example.com/repo"\n'
        "priority = -5\nenabled = false\n"
    )
    repo = RepoConfig.load(path)
    assert [s.name for s in repo.source] == ["local", "remote"]
    assert repo.source[0].path == Path("/srv/repo")
    assert repo.source[0].enabled is True
    assert repo.source[1].priority == -5
    assert repo.source[1].enabled is False


def test_repo_config_missing_name():
    with pytest.raises(ConfigError):
        RepoConfig.from_dict({"source": [{"type": "local"}]})


def test_assemblies_load_all(tmp_path):
    assert AssembliesConfig.load_all(tmp_path / "absent").assemblies == {}
    (tmp_path / "a.toml").write_text('[assemblies.base]\ndescription = "Base"\nplans = ["gcc", "make"]\n')
    (tmp_path / "b.toml").write_text('[assemblies.desktop]\nincludes = ["base"]\n')
    (tmp_path / "notes.txt").write_text("[assemblies.ignored]\n")
    cfg = AssembliesConfig.load_all(tmp_path)
    assert set(cfg.assemblies) == {"base", "desktop"}
    assert cfg.assemblies["base"].plans == ["gcc", "make"]
    assert cfg.assemblies["desktop"].includes == ["base"]
    assert cfg.assemblies["desktop"].description is None


def test_assemblies_load_precedence(monkeypatch, tmp_path):
    monkeypatch.setattr(config, "SYSTEM_ASSEMBLY_PATH", tmp_path / "none.toml")
    plans = tmp_path / "plans"
    plans.mkdir()
    (plans / "assembly.toml").write_text('[assemblies.fromplans]\nplans = ["zlib"]\n')
    work = tmp_path / "work"
    work.mkdir()
    monkeypatch.chdir(work)
    assert set(AssembliesConfig.load(None, plans).assemblies) == {"fromplans"}

    (work / "assembly.toml").write_text('[assemblies.local]\nplans = ["xz"]\n')
    assert set(AssembliesConfig.load(None, plans).assemblies) == {"local"}


def test_assemblies_load_missing_everywhere(monkeypatch, tmp_path):
    monkeypatch.setattr(config, "SYSTEM_ASSEMBLY_PATH", tmp_path / "none.toml")
    monkeypatch.chdir(tmp_path)
    assert AssembliesConfig.load(None, tmp_path / "plans").assemblies == {}


def test_general_from_dict_round_trip():
    general = GeneralConfig.from_dict({"components_dir": "/data/components"})
    assert general.components_dir == Path("/data/components")
    assert general.executors_dir == Path("/etc/wright/executors")