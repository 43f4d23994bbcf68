"""Tests for model building and import resolution."""

import pytest

from rook.builder import ModelBuilder, build_model
from rook.exceptions import RunbookLoadError, ValidationError
from rook.loader import load_runbook, runbook_path


def issue_messages(error: ValidationError) -> list[str]:
    return [issue.message for issue in error.errors]


class TestLoader:
    """Tests for runbook paths and the default loader."""

    def test_default_name(self, tmp_path):
        assert runbook_path(None, tmp_path) == (tmp_path / "main.tr").resolve()

    def test_suffix_appended(self, tmp_path):
        assert runbook_path("deploy", tmp_path).name == "deploy.tr"
        assert runbook_path("deploy.tr", tmp_path).name == "deploy.tr"

    def test_json_and_yaml(self, write_runbook):
        yaml_path = write_runbook("a.tr", "group:\n  - name: web\n")
        json_path = write_runbook("b.tr", '{"group": [{"name": "web"}]}')
        assert load_runbook(yaml_path) == load_runbook(json_path)

    def test_missing_file(self, tmp_path):
        with pytest.raises(RunbookLoadError, match="Cannot read runbook"):
            load_runbook(tmp_path / "nope.tr")

    def test_not_a_mapping(self, write_runbook):
        with pytest.raises(RunbookLoadError, match="mapping"):
            load_runbook(write_runbook("a.tr", "- just\n- a list\n"))


class TestModelBuilder:
    """Tests for groups, jobs and runs."""

    def test_build_simple_model(self, write_runbook, registry):
        path = write_runbook(
            "main.tr",
            """
            group:
              - name: web
                vars: {http_port: 80}
                hosts:
                  - name: web1
                    vars: {remote_user: deploy}
                  - web2
            job:
              - name: setup
                actions:
                  - action: package
                    name: install nginx
                    params: {name: nginx, state: present}
            run:
              - target: web
                name: deploy web
                become: true
                actions:
                  - action: job
                    params: {name: setup}
            """,
        )
        model = build_model(path, registry=registry)

        web = model.group("web")
        assert [host.name for host in web.hosts] == ["web1", "web2"]
        assert web.hosts[0].vars == {"remote_user": "deploy"}
        assert web.vars == {"http_port": 80}

        run = model.runs[0]
        assert run.label == "deploy web"
        assert run.options.become is True
        assert run.target_kind == "group"
        assert run.actions[0].job_ref == model.job_names["setup"]

    def test_build_is_deterministic(self, write_runbook, registry):
        path = write_runbook(
            "main.tr",
            """
            group:
              - name: base
                hosts: [db1]
              - name: web
                hosts: [web1]
                groups: [base]
            """,
        )
        first = build_model(path, registry=registry)
        second = build_model(path, registry=registry)
        assert first.group_names == second.group_names
        assert list(first.groups) == list(second.groups)
        assert first.host_names(first.group_names["web"]) == ["web1", "db1"]

    def test_shared_child_group(self, write_runbook, registry):
        """A group referenced from two parents exists once in the arena."""
        path = write_runbook(
            "main.tr",
            """
            group:
              - name: base
                hosts: [h1]
              - name: a
                groups: [{ref: base, vars: {tier: a}}]
              - name: b
                groups: [{ref: base, vars: {tier: b}}]
            """,
        )
        model = build_model(path, registry=registry)
        a, b = model.group("a"), model.group("b")
        assert a.children[0].group_id == b.children[0].group_id
        assert a.children[0].vars == {"tier": "a"}

    def test_inline_child_group(self, write_runbook, registry):
        path = write_runbook(
            "main.tr",
            """
            group:
              - name: web
                groups:
                  - name: canary
                    hosts: [web9]
            """,
        )
        model = build_model(path, registry=registry)
        child = model.groups[model.group("web").children[0].group_id]
        assert child.name == "canary"
        assert "canary" not in model.group_names

    def test_duplicate_group(self, write_runbook, registry):
        path = write_runbook("main.tr", "group:\n  - name: web\n  - name: web\n")
        with pytest.raises(ValidationError) as exc_info:
            build_model(path, registry=registry)
        assert "Duplicate group name 'web'" in issue_messages(exc_info.value)

    def test_duplicate_host_in_group(self, write_runbook, registry):
        path = write_runbook("main.tr", "group:\n  - name: web\n    hosts: [web1, web1]\n")
        with pytest.raises(ValidationError, match="Duplicate host 'web1'"):
            build_model(path, registry=registry)

    def test_undefined_group_ref(self, write_runbook, registry):
        path = write_runbook("main.tr", "group:\n  - name: web\n    groups: [nothere]\n")
        with pytest.raises(ValidationError, match="undefined group 'nothere'"):
            build_model(path, registry=registry)

    def test_group_referencing_itself(self, write_runbook, registry):
        path = write_runbook("main.tr", "group:\n  - name: web\n    groups: [web]\n")
        with pytest.raises(ValidationError, match="cannot reference itself"):
            build_model(path, registry=registry)

    def test_unknown_action_type(self, write_runbook, registry):
        path = write_runbook("main.tr", "run:\n  - actions:\n      - action: teleport\n")
        with pytest.raises(ValidationError, match="Unknown action type 'teleport'"):
            build_model(path, registry=registry)

    def test_job_action_requires_literal_name(self, write_runbook, registry):
        path = write_runbook(
            "main.tr",
            """
            job:
              - name: a
                actions: []
            run:
              - actions:
                  - action: job
                    params: {name: "{{ which }}"}
            """,
        )
        with pytest.raises(ValidationError, match="literal job name"):
            build_model(path, registry=registry)

    def test_undefined_job(self, write_runbook, registry):
        path = write_runbook("main.tr", "run:\n  - actions:\n      - {action: job, params: {name: ghost}}\n")
        with pytest.raises(ValidationError, match="Undefined job 'ghost'"):
            build_model(path, registry=registry)

    def test_job_cycle_names_the_cycle(self, write_runbook, registry):
        path = write_runbook(
            "main.tr",
            """
            job:
              - name: a
                actions:
                  - {action: job, params: {name: b}}
              - name: b
                actions:
                  - {action: job, params: {name: a}}
              - name: unused
                actions:
                  - {action: note, params: {msg: hi}}
            """,
        )
        with pytest.raises(ValidationError) as exc_info:
            build_model(path, registry=registry)
        cycles = [issue for issue in exc_info.value.errors if issue.kind == "cycle"]
        assert len(cycles) == 1
        assert cycles[0].message == "Job inclusion cycle: a -> b -> a"
        assert cycles[0].field in ("a", "b")

    def test_self_including_job(self, write_runbook, registry):
        path = write_runbook("main.tr", "job:\n  - name: a\n    actions:\n      - {action: job, params: {name: a}}\n")
        with pytest.raises(ValidationError, match="a -> a"):
            build_model(path, registry=registry)

    def test_run_target_must_exist(self, write_runbook, registry):
        path = write_runbook("main.tr", "run:\n  - target: nowhere\n    actions: []\n")
        with pytest.raises(ValidationError, match="neither a group nor a host"):
            build_model(path, registry=registry)

    def test_run_target_host(self, write_runbook, registry):
        path = write_runbook(
            "main.tr",
            "group:\n  - name: web\n    hosts: [web1]\nrun:\n  - target: web1\n    actions: []\n",
        )
        run = build_model(path, registry=registry).runs[0]
        assert run.target_kind == "host"

    def test_run_option_types(self, write_runbook, registry):
        path = write_runbook("main.tr", "run:\n  - become: 'yes'\n    actions: []\n")
        with pytest.raises(ValidationError, match="become must be a bool"):
            build_model(path, registry=registry)

    def test_all_issues_reported_together(self, write_runbook, registry):
        path = write_runbook(
            "main.tr",
            """
            group:
              - name: web
                groups: [missing]
              - name: web
            job:
              - name: broken
                actions:
                  - action: teleport
            run:
              - target: elsewhere
                actions: []
            """,
        )
        with pytest.raises(ValidationError) as exc_info:
            build_model(path, registry=registry)
        assert len(exc_info.value.errors) == 4
        assert str(exc_info.value).startswith("4 validation error(s)")


class TestImports:
    """Tests for use blocks."""

    def test_aliased_job(self, write_runbook, registry):
        write_runbook(
            "a.tr",
            """
            job:
              - name: j1
                actions:
                  - {action: note, name: first, params: {msg: one}}
                  - {action: note, name: second, params: {msg: two}}
            run:
              - actions:
                  - {action: note, params: {msg: ignored}}
            """,
        )
        path = write_runbook(
            "main.tr",
            """
            use:
              - path: a.tr
                jobs: [{name: j1, as: aliased}]
            run:
              - actions:
                  - {action: job, params: {name: aliased}}
            """,
        )
        model = build_model(path, registry=registry)

        assert "j1" not in model.job_names
        job = model.jobs[model.job_names["aliased"]]
        assert job.name == "j1"
        assert [a.name for a in job.actions] == ["first", "second"]
        # runs of imported files are ignored
        assert len(model.runs) == 1

    def test_import_memoized(self, write_runbook, registry):
        """A file imported from several places is loaded and built once."""
        write_runbook("common.tr", "group:\n  - name: base\n    hosts: [h1]\n")
        write_runbook(
            "lib.tr",
            "use:\n  - path: common\n    groups: [base]\ngroup:\n  - name: lib\n    groups: [base]\n",
        )
        path = write_runbook(
            "main.tr",
            """
            use:
              - path: common.tr
                groups: [{name: base, as: first}]
              - path: common.tr
                groups: [{name: base, as: second}]
              - path: lib.tr
                groups: [lib]
            """,
        )
        builder = ModelBuilder(registry=registry)
        model = builder.build(path)

        common = runbook_path("common", path.parent)
        assert builder.loaded.count(common) == 1
        assert model.group_names["first"] == model.group_names["second"]
        lib = model.group("lib")
        assert lib.children[0].group_id == model.group_names["first"]

    def test_imported_job_keeps_its_namespace(self, write_runbook, registry):
        """Jobs included inside an imported job resolve in their own file."""
        write_runbook(
            "a.tr",
            """
            job:
              - name: inner
                actions:
                  - {action: note, params: {msg: inner}}
              - name: outer
                actions:
                  - {action: job, params: {name: inner}}
            """,
        )
        path = write_runbook("main.tr", "use:\n  - path: a.tr\n    jobs: [outer]\n")
        model = build_model(path, registry=registry)
        outer = model.job("outer")
        assert model.jobs[outer.actions[0].job_ref].name == "inner"
        assert "inner" not in model.job_names

    def test_missing_import_name(self, write_runbook, registry):
        write_runbook("a.tr", "job:\n  - name: j1\n    actions: []\n")
        path = write_runbook("main.tr", "use:\n  - path: a.tr\n    jobs: [j2]\n")
        with pytest.raises(ValidationError, match="does not define job 'j2'"):
            build_model(path, registry=registry)

    def test_duplicate_after_alias(self, write_runbook, registry):
        write_runbook("a.tr", "job:\n  - name: j1\n    actions: []\n")
        path = write_runbook(
            "main.tr",
            "use:\n  - path: a.tr\n    jobs: [{name: j1, as: setup}]\njob:\n  - name: setup\n    actions: []\n",
        )
        with pytest.raises(ValidationError, match="Duplicate job name 'setup'"):
            build_model(path, registry=registry)

    def test_circular_import(self, write_runbook, registry):
        write_runbook("a.tr", "use:\n  - path: main.tr\n")
        path = write_runbook("main.tr", "use:\n  - path: a.tr\n")
        with pytest.raises(ValidationError, match="Circular import"):
            build_model(path, registry=registry)

    def test_unreadable_import(self, write_runbook, registry):
        path = write_runbook("main.tr", "use:\n  - path: absent.tr\n")
        with pytest.raises(ValidationError, match="Cannot import"):
            build_model(path, registry=registry)

    def test_custom_loader(self, tmp_path, registry):
        trees = {
            "main.tr": {"use": [{"path": "lib", "groups": ["web"]}], "run": [{"target": "web", "actions": []}]},
            "lib.tr": {"group": [{"name": "web", "hosts": ["web1"]}]},
        }

        def loader(path):
            return trees[path.name]

        model = build_model(tmp_path / "main.tr", loader=loader, registry=registry)
        assert model.host_names(model.group_names["web"]) == ["web1"]
