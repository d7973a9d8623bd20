# dagsflow

A small DAG scheduler. You declare jobs and the dependencies between them, and a DAG runs on a cron-style schedule. The command-line tool starts each DAG in its own background process, and each DAG writes its own log file.

## Features

- Jobs are chained with `Job.then` and fanned out with `Job.branch`.
- Branch jobs (`DAG.new_branch_job`) return the ids of the children that run next. The children that are not chosen are marked `SKIPPED`.
- Each job has a trigger rule (`TriggerRule`): `all_success` (the default), `all_failed` or `always`.
- The jobs of a DAG share XCom values through `Context.set_xcom` and `Context.get_xcom`.
- A schedule is a five-field cron expression, a descriptor (`@yearly`, `@annually`, `@monthly`, `@weekly`, `@daily`, `@midnight`, `@hourly`) or `@every <duration>`, for example `@every 1m30s`. Cron fields accept lists, ranges, steps and month or weekday names. See `dagsflow.schedule.parse_schedule`.
- Named connections are loaded from the `*.json` files in a directory (`dagsflow.connections.load_all_connections`). If `GOOGLE_APPLICATION_CREDENTIALS` is set, an `env_bigquery` connection is added as well.
- Query files are rendered with a small `{{ ... }}` template language (`dagsflow.templating.render_template`). It handles field references such as `{{.name}}`, literals and function calls.
- A DAG can trigger another registered DAG with `trigger_dag`, `trigger_dag_blocking` or `trigger_dag_with_config`.

## Installing

```
pip install .
```

## Defining a DAG

```python
from dagsflow.dag import DAG, register

d = DAG("etl", "@every 10s")

def extract(ctx):
    ctx.set_xcom("rows", 42)

def choose(ctx):
    return ["load"] if ctx.get_xcom("rows") > 0 else ["noop"]

start = d.new_job("extract", extract)
pick = d.new_branch_job("choose", choose)
load = d.new_job("load", lambda ctx: ctx.dag.log_info("loading"))
noop = d.new_job("noop", lambda ctx: None)

start.then(pick)
pick.branch(load, noop)
register(d)

d.run_once()             # run every job once and wait for the run to finish
print(d.format_graph())  # the job tree as text
```

If a job raises, its status becomes `FAILED` and the error is written to the log. Log lines go to `<log_dir>/<name>.log`, which is `logs/` unless you pass `log_dir`. They are written only while a run, rerun or scheduled loop has that file open. `DAG.run()` runs the DAG on its schedule forever and sends anything the jobs print to the log.

`DAG.rerun_dag()` resets every job and runs the whole DAG again. `DAG.rerun_job(job_id, downstream, upstream)` runs one job again. It can first reset the job's upstream or downstream jobs, and it raises `KeyError` for an unknown job id.

### Query jobs

`DAG.new_bigquery_job(job_id, query_path, params)` reads the SQL file at `query_path` and renders it against `params`. Inside the template, `{{xcom "key"}}` gives an XCom value. The project id is looked up in this order:

1. `params["project_id"]`, which is itself rendered as a template;
2. the `project_id` XCom value;
3. `config["project_id"]` of the DAG;
4. the `env_bigquery` connection.

The rendered query goes to `BigQueryOperator`, which calls the `query_client` that was passed to the `DAG` as `client(project_id, query, timeout)`.

## Command line

```
dagsflow list                 # DAGs, their schedules and whether they are marked running
dagsflow graph <dag>          # print the job tree
dagsflow run <dag>            # start a DAG's scheduled loop in the background
dagsflow run-all
dagsflow stop <dag>
dagsflow stop-all
dagsflow log <dag>            # print the log, then follow it
dagsflow rerun-dag <dag>
dagsflow rerun-job <dag> <job> [--downstream] [--upstream]
```

`rerun-dag` and `rerun-job` run in the foreground and return when the run is done. The pid and running-marker files go to `dagsflow-pid/` and the logs to `logs/`. Connections are read from `connections/`. All three directories are in the current working directory.

## What it does not do

- The command-line tool knows only the example DAGs in `dagsflow.examples` (`custom_dag`, `dag1`, `dag2`, `dag_branch`, `trigger_rule_dag`). It cannot find or load DAGs that you define yourself. To schedule your own DAGs, call `DAG.run()` or `DAG.run_once()` from your own code.
- There is no built-in BigQuery client. A query job fails with `OperatorError` unless the `DAG` was given a `query_client`.
- Run state is not stored. Job statuses and XCom values live only in the memory of the process that runs the DAG.