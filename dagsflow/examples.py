"""Example DAGs that come registered with the command-line tool."""

from __future__ import annotations

from .dag import DAG, Context, register
from .job import TriggerRule


def _custom_dag() -> DAG:
    config = {
        "threshold": 99,
        "message": "Hello from config",
        "project_id": "example-project",
    }
    d = DAG("custom_dag", "@every 1s", config)

    def start_action(ctx: Context) -> None:
        print("[custom_dag] Start job running")
        ctx.set_xcom("val", ctx.dag.config.get("threshold"))
        ctx.set_xcom("project_id", ctx.dag.config.get("project_id"))

    def choose(ctx: Context) -> list[str]:
        val = ctx.get_xcom("val")
        if not isinstance(val, int):
            raise TypeError(f"xcom 'val' is not an int: {val!r}")
        print(f"{val} << get xcom")
        if val > 50:
            print("[custom_dag] Choosing print_A")
            return ["print_A"]
        print("[custom_dag] Choosing print_B")
        return ["print_B"]

    def trigger_branch(ctx: Context) -> None:
        ctx.dag.trigger_dag_with_config(
            "dag_branch", {"param1": "value1", "param2": 42}, False
        )

    def trigger_dag1(ctx: Context) -> None:
        ctx.dag.trigger_dag_with_config("dag1", {"param1": "value1", "param2": 42}, True)

    start = d.new_job("start", start_action)
    branch = d.new_branch_job("branch", choose)
    print_a = d.new_job("print_A", lambda ctx: ctx.dag.log_info("Print A"))
    print_b = d.new_job("print_B", lambda ctx: ctx.dag.log_info("Print B"))
    print_c = d.new_job("print_C", lambda ctx: ctx.dag.log_info("Print C"))
    finish_a = d.new_job("finishA", lambda ctx: ctx.dag.log_info("Finish job A"))
    finish_b = d.new_job("finishB", lambda ctx: ctx.dag.log_info("Finish job B"))
    trigger_job = d.new_job("trigger_dag_branch", trigger_branch)
    trigger_blocking_job = d.new_job("trigger_dag1", trigger_dag1)
    bq_job = d.new_bigquery_job(
        "bq_task_1",
        "dags/sql/dw_to_tmp.sql",
        {
            "project_id": '{{xcom "project_id"}}',
            "target_dataset": "dw_ext_data",
            "target_table": "kemdikbud_ref_satpen_npsn",
        },
    )

    start.then(branch)
    branch.branch(print_a, print_b)
    print_a.then(print_c)
    print_c.then(finish_a)
    print_b.then(finish_b)
    finish_a.then(bq_job).then(trigger_blocking_job).then(trigger_job)
    return d


def _dag1() -> DAG:
    d = DAG("dag1", "@every 1s")

    def run_a(ctx: Context) -> None:
        ctx.dag.log_info("[DAG1] Run A via log_info")
        print("[DAG1] Run A")
        ctx.set_xcom("some-key", "some-value")
        raise RuntimeError("something went wrong!")

    def run_b(ctx: Context) -> None:
        param2 = ctx.dag.config["param2"]
        if not isinstance(param2, int):
            raise TypeError(f"config 'param2' is not an int: {param2!r}")
        ctx.dag.log_info(f"{param2} << getParam2")
        ctx.dag.log_info(f"{ctx.get_xcom('some-key')} << value of key")
        ctx.dag.log_info("[DAG1] Run B")

    a = d.new_job("a", run_a)
    b = d.new_job("b", run_b)
    a.then(b)
    return d


def _dag2() -> DAG:
    d = DAG("dag2", "*/2 * * * *")

    def run_x(ctx: Context) -> None:
        print("[DAG2] Run 2")
        ctx.dag.log_info("[DAG2] Run 2")
        ctx.set_xcom("key", "value")

    def run_y(ctx: Context) -> None:
        print(ctx.get_xcom("key"), "<< value of key")
        print("[DAG2] Run Y")

    x = d.new_job("x", run_x)
    y = d.new_job("y", run_y)
    x.then(y)
    return d


def _dag_branch() -> DAG:
    d = DAG("dag_branch", "@every 1s")

    def start_action(ctx: Context) -> None:
        print("[dag_branch] Start job running")
        ctx.set_xcom("val", 99)

    def choose(ctx: Context) -> list[str]:
        val = ctx.get_xcom("val")
        if not isinstance(val, int):
            raise TypeError(f"xcom 'val' is not an int: {val!r}")
        if val > 50:
            print("[dag_branch] Branch chooses high")
            return ["high"]
        print("[dag_branch] Branch chooses low")
        return ["low"]

    start = d.new_job("start", start_action)
    branch = d.new_branch_job("branch", choose)
    high = d.new_job("high", lambda ctx: print("[dag_branch] Running HIGH path"))
    low = d.new_job("low", lambda ctx: print("[dag_branch] Running LOW path"))

    start.then(branch)
    branch.branch(high, low)
    return d


def _trigger_rule_dag() -> DAG:
    d = DAG("trigger_rule_dag", "@every 1s")

    def fail_b(ctx: Context) -> None:
        raise RuntimeError("Simulated error in Job B")

    def logger(message: str):
        return lambda ctx: ctx.dag.log_info(message)

    job_a = d.new_job("job_a", logger("Job A running (success)"))
    job_b = d.new_job("job_b", fail_b)
    job_ac = d.new_job(
        "job_a_c_all_success", logger("Job A C runs because all upstreams succeeded")
    ).with_trigger_rule(TriggerRule.ALL_SUCCESS)
    job_bc = d.new_job(
        "job_b_all_success", logger("Job B C runs because all upstreams succeeded")
    ).with_trigger_rule(TriggerRule.ALL_SUCCESS)
    job_ad = d.new_job(
        "job_a_d_all_failed", logger("Job A D runs because all upstreams failed")
    ).with_trigger_rule(TriggerRule.ALL_FAILED)
    job_bd = d.new_job(
        "job_b_d_all_failed", logger("Job B D runs because all upstreams failed")
    ).with_trigger_rule(TriggerRule.ALL_FAILED)
    job_ae = d.new_job(
        "job_a_e_always", logger("Job A E runs because its trigger rule is always")
    ).with_trigger_rule(TriggerRule.ALWAYS)
    job_be = d.new_job(
        "job_b_e_always", logger("Job B E runs because its trigger rule is always")
    ).with_trigger_rule(TriggerRule.ALWAYS)

    job_a.then(job_ac)
    job_b.then(job_bc)
    job_a.then(job_ad)
    job_b.then(job_bd)
    job_a.then(job_ae)
    job_b.then(job_be)
    return d


def register_examples() -> list[DAG]:
    """Build the example DAGs, register them and return them."""
    dags = [_custom_dag(), _dag1(), _dag2(), _dag_branch(), _trigger_rule_dag()]
    for d in dags:
        register(d)
    return dags