import re
import threading
from collections import Counter

import pytest

from dagsflow.connections import Connection
from dagsflow.dag import DAG, Context, get, list_dags, register
from dagsflow.job import JobStatus, TriggerRule

LABEL = "\x1b[3m\x1b[38;5;245m [from {}]\x1b[0m"


@pytest.fixture
def log_dir(tmp_path):
    return tmp_path / "logs"


def read_log(dag):
    return (dag.log_dir / f"{dag.name}.log").read_text(encoding="utf-8")


def test_context_xcom_round_trip(log_dir):
    dag = DAG("xcom_dag", "@every 1s", log_dir=log_dir)
    ctx = Context(dag)
    ctx.set_xcom("key", "value")
    assert ctx.get_xcom("key") == "value"
    assert ctx.get_xcom("missing") is None


def test_new_dag_and_job_defaults(log_dir):
    dag = DAG("defaults_dag", "@every 1s", log_dir=log_dir)
    job = dag.new_job("a", lambda ctx: None)
    assert dag.config == {}
    assert dag.jobs == [job]
    assert job.status == JobStatus.PENDING
    assert job.trigger_rule == TriggerRule.ALL_SUCCESS


def test_run_once_runs_chain_in_order(log_dir):
    dag = DAG("chain_dag", "@every 1s", log_dir=log_dir)
    order = []
    a = dag.new_job("a", lambda ctx: order.append("a"))
    b = dag.new_job("b", lambda ctx: order.append("b"))
    c = dag.new_job("c", lambda ctx: order.append("c"))
    a.then(b).then(c)
    dag.run_once()
    assert order == ["a", "b", "c"]
    assert [job.status for job in dag.jobs] == [JobStatus.SUCCESS] * 3


def test_run_once_writes_log_lines(log_dir):
    dag = DAG("logged_dag", "@every 1s", log_dir=log_dir)
    dag.new_job("a", lambda ctx: ctx.dag.log_info("hello"))
    dag.run_once()
    lines = read_log(dag).splitlines()
    assert re.fullmatch(
        r"\[\d{4}-\d\d-\d\d \d\d:\d\d:\d\d\] \[INFO\] Running DAG: logged_dag", lines[0]
    )
    assert lines[-1].endswith("[INFO] DAG logged_dag finished.")
    text = "\n".join(lines)
    assert "[INFO] Starting job a" in text
    assert "[INFO] hello" in text
    assert "[INFO] Completed job a" in text


def test_logging_without_open_run_writes_nothing(log_dir):
    dag = DAG("quiet_dag", "@every 1s", log_dir=log_dir)
    dag.log_info("nothing")
    dag.log_error("nothing")
    assert not (log_dir / "quiet_dag.log").exists()


def test_failed_job_marks_failed_and_stops_children(log_dir):
    dag = DAG("fail_dag", "@every 1s", log_dir=log_dir)

    def boom(ctx):
        raise RuntimeError("boom")

    a = dag.new_job("a", boom)
    b = dag.new_job("b", lambda ctx: None)
    a.then(b)
    dag.run_once()
    assert a.status == JobStatus.FAILED
    assert b.status == JobStatus.PENDING
    assert "[ERROR] Job a panic: boom" in read_log(dag)


def test_trigger_rules_after_success(log_dir):
    dag = DAG("rules_dag", "@every 1s", log_dir=log_dir)
    a = dag.new_job("a", lambda ctx: None)
    on_success = dag.new_job("on_success", lambda ctx: None).with_trigger_rule(TriggerRule.ALL_SUCCESS)
    on_failed = dag.new_job("on_failed", lambda ctx: None).with_trigger_rule(TriggerRule.ALL_FAILED)
    always = dag.new_job("always", lambda ctx: None).with_trigger_rule(TriggerRule.ALWAYS)
    a.branch(on_success, on_failed, always)
    dag.run_once()
    assert on_success.status == JobStatus.SUCCESS
    assert on_failed.status == JobStatus.SKIPPED
    assert always.status == JobStatus.SUCCESS
    assert "Skipping job on_failed due to unmet trigger rule" in read_log(dag)


def test_branch_runs_selected_and_skips_others(log_dir):
    dag = DAG("branch_dag", "@every 1s", log_dir=log_dir)
    ran = []
    start = dag.new_job("start", lambda ctx: ctx.set_xcom("val", 99))
    branch = dag.new_branch_job(
        "branch", lambda ctx: ["high"] if ctx.get_xcom("val") > 50 else ["low"]
    )
    high = dag.new_job("high", lambda ctx: ran.append("high"))
    low = dag.new_job("low", lambda ctx: ran.append("low"))
    start.then(branch)
    branch.branch(high, low)
    dag.run_once()
    assert ran == ["high"]
    assert branch.status == JobStatus.SUCCESS
    assert high.status == JobStatus.SUCCESS
    assert low.status == JobStatus.SKIPPED
    log = read_log(dag)
    assert "Branch branch selected [high]" in log
    assert "Skipping job low (auto-success to unblock DAG)" in log


def test_failing_branch_function_fails_branch(log_dir):
    dag = DAG("bad_branch_dag", "@every 1s", log_dir=log_dir)

    def choose(ctx):
        raise ValueError("no choice")

    branch = dag.new_branch_job("branch", choose)
    child = dag.new_job("child", lambda ctx: None)
    branch.branch(child)
    dag.run_once()
    assert branch.status == JobStatus.FAILED
    assert child.status == JobStatus.PENDING
    assert "Job branch panic: no choice" in read_log(dag)


def test_children_in_definition_order(log_dir):
    dag = DAG("children_dag", "@every 1s", log_dir=log_dir)
    a = dag.new_job("a", lambda ctx: None)
    b = dag.new_job("b", lambda ctx: None)
    c = dag.new_job("c", lambda ctx: None)
    a.branch(b, c)
    assert dag.children(a) == [b, c]
    assert dag.children(b) == []


def test_format_graph_tree(log_dir):
    dag = DAG("graph_dag", "@every 1s", log_dir=log_dir)
    a = dag.new_job("a", lambda ctx: None)
    b = dag.new_job("b", lambda ctx: None)
    c = dag.new_job("c", lambda ctx: None)
    a.branch(b, c)
    expected = "\n".join([
        "DAG: graph_dag",
        "└── a",
        "    ├── b" + LABEL.format("a"),
        "    └── c" + LABEL.format("a"),
    ])
    assert dag.format_graph() == expected


def test_format_graph_expands_shared_child_once(log_dir):
    dag = DAG("diamond_dag", "@every 1s", log_dir=log_dir)
    a, b, c, d, e = (dag.new_job(name, lambda ctx: None) for name in "abcde")
    a.branch(b, c)
    b.then(d)
    c.then(d)
    d.then(e)
    graph = dag.format_graph()
    assert graph.count("── d") == 2
    assert graph.count("── e") == 1


def test_print_graph_matches_format(log_dir, capsys):
    dag = DAG("printed_dag", "@every 1s", log_dir=log_dir)
    a = dag.new_job("a", lambda ctx: None)
    a.then(dag.new_job("b", lambda ctx: None))
    dag.print_graph()
    assert capsys.readouterr().out == dag.format_graph() + "\n"


def test_rerun_dag_runs_everything_again(log_dir):
    dag = DAG("rerun_dag", "@every 1s", log_dir=log_dir)
    counts = Counter()
    a = dag.new_job("a", lambda ctx: counts.update(["a"]))
    a.then(dag.new_job("b", lambda ctx: counts.update(["b"])))
    dag.run_once()
    dag.rerun_dag()
    assert counts == {"a": 2, "b": 2}
    assert "Rerunning DAG: rerun_dag" in read_log(dag)


def test_rerun_job_runs_target_and_its_children(log_dir):
    dag = DAG("rerun_job_dag", "@every 1s", log_dir=log_dir)
    counts = Counter()
    a = dag.new_job("a", lambda ctx: counts.update(["a"]))
    b = dag.new_job("b", lambda ctx: counts.update(["b"]))
    c = dag.new_job("c", lambda ctx: counts.update(["c"]))
    a.then(b).then(c)
    dag.run_once()
    dag.rerun_job("b")
    assert counts == {"a": 1, "b": 2, "c": 2}
    assert b.status == JobStatus.SUCCESS


def test_rerun_job_downstream(log_dir):
    dag = DAG("rerun_down_dag", "@every 1s", log_dir=log_dir)
    counts = Counter()
    a = dag.new_job("a", lambda ctx: counts.update(["a"]))
    a.then(dag.new_job("b", lambda ctx: counts.update(["b"])))
    dag.run_once()
    dag.rerun_job("a", downstream=True)
    assert counts == {"a": 2, "b": 2}
    assert "Rerunning job a (downstream=true, upstream=false)" in read_log(dag)


def test_rerun_unknown_job_raises(log_dir):
    dag = DAG("rerun_missing_dag", "@every 1s", log_dir=log_dir)
    with pytest.raises(KeyError):
        dag.rerun_job("zz")
    assert "[ERROR] [ERROR] Job zz not found" in read_log(dag)


def test_registry(log_dir):
    dag = DAG("registry_test_dag", "@every 1s", log_dir=log_dir)
    register(dag)
    assert get("registry_test_dag") is dag
    assert dag in list_dags()
    assert get("no_such_registered_dag") is None


def test_trigger_dag_with_config_blocking(log_dir):
    seen = []
    target = DAG("trigger_target_cfg", "@every 1s", log_dir=log_dir)
    target.new_job("t", lambda ctx: seen.append(ctx.dag.config["param2"]))
    register(target)
    config = {"param1": "value1", "param2": 42}
    source = DAG("trigger_source_cfg", "@every 1s", log_dir=log_dir)
    source.new_job(
        "fire", lambda ctx: ctx.dag.trigger_dag_with_config("trigger_target_cfg", config, True)
    )
    source.run_once()
    assert seen == [42]
    assert target.config == config
    assert (
        "Triggering DAG trigger_target_cfg from DAG trigger_source_cfg "
        "with config map[param1:value1 param2:42]"
    ) in read_log(source)


def test_trigger_dag_blocking(log_dir):
    ran = []
    target = DAG("trigger_target_blocking", "@every 1s", log_dir=log_dir)
    target.new_job("t", lambda ctx: ran.append("t"))
    register(target)
    source = DAG("trigger_source_blocking", "@every 1s", log_dir=log_dir)
    source.new_job("fire", lambda ctx: ctx.dag.trigger_dag_blocking("trigger_target_blocking"))
    source.run_once()
    assert ran == ["t"]
    assert "Triggering DAG trigger_target_blocking (blocking) from DAG trigger_source_blocking" in read_log(source)


def test_trigger_dag_in_background(log_dir):
    finished = threading.Event()
    target = DAG("trigger_target_bg", "@every 1s", log_dir=log_dir)
    target.new_job("t", lambda ctx: finished.set())
    register(target)
    source = DAG("trigger_source_bg", "@every 1s", log_dir=log_dir)
    source.new_job("fire", lambda ctx: ctx.dag.trigger_dag("trigger_target_bg"))
    source.run_once()
    assert finished.wait(5)


def test_trigger_unknown_dag_logs_error(log_dir):
    source = DAG("trigger_source_missing", "@every 1s", log_dir=log_dir)
    fire = source.new_job("fire", lambda ctx: ctx.dag.trigger_dag("nope"))
    source.run_once()
    assert fire.status == JobStatus.SUCCESS
    assert "[ERROR] DAG nope not found to trigger" in read_log(source)


@pytest.fixture
def sql_file(tmp_path):
    path = tmp_path / "query.sql"
    path.write_text("SELECT * FROM {{.target_dataset}}.{{.target_table}}", encoding="utf-8")
    return path


def test_bigquery_job_renders_query_and_project_from_xcom(log_dir, sql_file):
    calls = []
    dag = DAG("bq_xcom_dag", "@every 1s", log_dir=log_dir,
              query_client=lambda project, query, timeout: calls.append((project, query)))
    start = dag.new_job("start", lambda ctx: ctx.set_xcom("project_id", "demo-project"))
    bq = dag.new_bigquery_job("bq", str(sql_file), {
        "project_id": '{{xcom "project_id"}}',
        "target_dataset": "dw",
        "target_table": "t",
    })
    start.then(bq)
    dag.run_once()
    assert calls == [("demo-project", "SELECT * FROM dw.t")]
    assert bq.status == JobStatus.SUCCESS


def test_bigquery_job_project_from_config(log_dir, sql_file):
    calls = []
    dag = DAG("bq_config_dag", "@every 1s", {"project_id": "cfg-project"}, log_dir=log_dir)
    dag.query_client = lambda project, query, timeout: calls.append(project)
    dag.new_bigquery_job("bq", str(sql_file), {"target_dataset": "a", "target_table": "b"})
    dag.run_once()
    assert calls == ["cfg-project"]


def test_bigquery_job_project_from_env_connection(log_dir, sql_file):
    calls = []
    dag = DAG("bq_conn_dag", "@every 1s", log_dir=log_dir)
    dag.connections["env_bigquery"] = Connection(type="bigquery", config={"project_id": "conn-project"})
    dag.query_client = lambda project, query, timeout: calls.append(project)
    dag.new_bigquery_job("bq", str(sql_file), {"target_dataset": "a", "target_table": "b"})
    dag.run_once()
    assert calls == ["conn-project"]


def test_bigquery_job_missing_file_fails(log_dir, tmp_path):
    dag = DAG("bq_missing_dag", "@every 1s", log_dir=log_dir)
    bq = dag.new_bigquery_job("bq", str(tmp_path / "absent.sql"), {})
    dag.run_once()
    assert bq.status == JobStatus.FAILED
    assert "Failed to read query file" in read_log(dag)


def test_bigquery_job_without_client_fails(log_dir, sql_file):
    dag = DAG("bq_noclient_dag", "@every 1s", {"project_id": "p"}, log_dir=log_dir)
    bq = dag.new_bigquery_job("bq", str(sql_file), {"target_dataset": "a", "target_table": "b"})
    dag.run_once()
    assert bq.status == JobStatus.FAILED
    assert "Job bq panic: failed to create BQ client" in read_log(dag)