# wright

A library of building blocks for a declarative Linux package builder:
layered configuration, build-script variables, lifecycle stages run through
pluggable executors, source fetching and verification, a build cache,
dependency graphs with automatic bootstrap-cycle breaking, build-set
expansion and a parallel, dependency-ordered build scheduler.

## Installation

```
pip install .
```

Python 3.11 or newer is required. The only runtime dependency is
`zstandard`, used for `.tar.zst` archives. Git sources are handled by
running the `git` command.

## Configuration (`wright.config`)

`GlobalConfig.load()` with no path merges, from lowest to highest priority:

1. `/etc/wright/wright.toml`
2. `$XDG_CONFIG_HOME/wright/wright.toml` (or `~/.config/...`; non-root users only)
3. `./wright.toml`

Tables merge key by key (`merge_toml`); scalars and arrays from a higher
layer replace the lower one. Missing files are skipped; with no file at all
the built-in defaults are used. An explicit path loads that single file
alone. Without a `[general]` table, non-root users get cache and log
directories under their XDG cache and state locations.

```python
from wright.config import GlobalConfig

config = GlobalConfig.load()
print(config.build.cflags, config.general.plans_dir)
```

`RepoConfig.load(path)` reads `[[source]]` entries (default
`/etc/wright/repos.toml`). `AssembliesConfig.load(path, plans_dir)` reads one
assembly file (the given path, else `./assembly.toml`, else
`<plans_dir>/assembly.toml`, else `/etc/wright/assembly.toml`), and
`AssembliesConfig.load_all(directory)` merges every `*.toml` in a directory.
Malformed files raise `wright.errors.ConfigError`.

## Build variables (`wright.variables`)

```python
from wright.variables import substitute

substitute("echo ${PKG_NAME}-${PKG_VERSION}",
           {"PKG_NAME": "hello", "PKG_VERSION": "1.0.0"})
# 'echo hello-1.0.0'
```

Unknown `${NAME}` references are left as they are. `standard_variables(...)`
returns the map every stage receives (`PKG_NAME`, `PKG_VERSION`,
`PKG_RELEASE`, `PKG_ARCH`, `SRC_DIR`, `PKG_DIR`, `FILES_DIR`, `CFLAGS`,
`CXXFLAGS`).

## Executors and lifecycle (`wright.executor`, `wright.lifecycle`)

An `ExecutorRegistry` always holds the built-in `shell` executor
(`/bin/bash -e -o pipefail`) and can load more from `[executor]` tables in
`*.toml` files. `execute_script` expands a script, writes it into the
working directory as `.wright_script<ext>` and runs it. Stage environment
values win over build variables, and a fixed set of toolchain variables
(`CC`, `CFLAGS`, `PKG_CONFIG_PATH`, `MAKEFLAGS`, ...) is passed through from
the host.

`LifecyclePipeline` runs a `LifecycleSpec`. The default order is `fetch`,
`verify`, `extract`, `prepare`, `configure`, `compile`, `check`, `package`,
`post_package`; the first three are left to the builder, the rest run the
plan's scripts with `pre_<stage>` and `post_<stage>` hooks around them. A
list of stages restricts the run to those stages, still in pipeline order.
During an MVP pass (`WRIGHT_BUILD_PHASE=mvp`) `mvp_lifecycle` and
`mvp_lifecycle_order` take precedence. Each stage writes
`<log_dir>/<stage>.log`; a non-zero exit raises `BuildError` with the last
40 lines of stderr (or stdout).

## Sources and the builder (`wright.sources`, `wright.checksums`, `wright.builder`)

`Builder(config).build(plan, plan_dir, ...)` takes a `BuildPlan` and:

- downloads `http(s)` sources, clones `git+URL#ref` sources into a bare
  cache, and copies local files (which must stay inside the plan directory)
  into the source cache;
- verifies SHA-256 hashes (`SKIP` disables the check for one source);
- unpacks `.tar.gz`, `.tgz`, `.tar.xz`, `.tar.bz2` and `.tar.zst` archives
  and copies other files to `files/`;
- runs the lifecycle and every split package's `package` stage;
- saves `pkg/`, `log/` and `pkg-*` to a build cache keyed by a hash of the
  plan, sources, scripts and compiler flags, and restores from it next time
  unless `force` is set, a bootstrap build is running, or the run is partial.

`Builder.clean` removes the working directory and cache entry;
`Builder.update_hashes` rewrites the `sha256 = [...]` list in a plan file in
place (`checksums.rewrite_sha256`), leaving the rest of the text untouched.

## Dependency graphs (`wright.graph`, `wright.expansion`)

```python
from wright.graph import PlanNode, build_plan_graph, inject_bootstrap_passes

plans = {
    "a": PlanNode("a", link=["b"]),
    "b": PlanNode("b", build=["a"], mvp={"build": []}),
}
graph = build_plan_graph(plans.values(), plans)
inject_bootstrap_passes(graph)
# graph.deps_map == {"a": ["b:bootstrap"], "b": ["a", "b:bootstrap"], "b:bootstrap": []}
```

Cycles are found with Tarjan's algorithm. Each is broken by a
`<name>:bootstrap` task for a member whose MVP dependencies drop at least
one cyclic edge, choosing the fewest dropped edges and then by name; a cycle
with no such member raises `BuildError`.

`expand_missing_dependencies` widens a build set upward with uninstalled
build and link dependencies (all of them, runtime included and toolchain
excepted, with `force_all`); `expand_rebuild_deps` widens it downward to
plans that link against it (or depend on it at all, with `rebuild_all`),
recording a `RebuildReason` for each.

## Scheduling and reporting (`wright.scheduler`, `wright.orchestrator`)

`BuildScheduler(deps_map, build_set, build, max_parallel, keep_going).run()`
calls `build(name, active)` in worker threads, starting a task only when its
dependencies inside the build set are done, and returns names in completion
order. A failure raises `BuildError` unless `keep_going` is set; a stall
raises `BuildError` listing what each task waits for. `cpu_budget`,
`dockyard_count` and `nproc_share` compute CPU shares, and `resolve_scope`
turns `BuildOptions` flags into a `Scope`.

`orchestrator.bootstrap_env` gives the extra variables for a full or MVP
pass, `plan_summary` the tagged construction plan, and `lint_report` a
textual cycle and MVP-candidate report.

## What this package does not do

- It has no command-line programs; everything is used from Python.
- It does not read plan files into `BuildPlan` or `PlanNode` objects; the
  caller builds them.
- It runs scripts only on the host. A stage whose dockyard level is not
  `none` needs a sandbox runner supplied through `Builder.runner` (or the
  `runner` argument); none is included.
- It keeps no database of installed packages, and does not create, install,
  upgrade or remove package archives; `expand_missing_dependencies` takes an
  `is_installed` callable instead.