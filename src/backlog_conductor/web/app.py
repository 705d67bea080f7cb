"""JSON API over the backlog, the dependency graph and the agents."""

from contextlib import asynccontextmanager

import uvicorn
from starlette.applications import Starlette
from starlette.concurrency import run_in_threadpool
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from backlog_conductor.config import Config, get_config
from backlog_conductor.core import tasks as tasks_mod
from backlog_conductor.core import worktrees as worktrees_mod
from backlog_conductor.core.conductor import Conductor
from backlog_conductor.core.errors import ConductorError
from backlog_conductor.db.engine import init_db
from backlog_conductor.db.models import TaskStatus
from backlog_conductor.integrations.git import GitError
from backlog_conductor.serialize import agent_dict, event_dict, impact_dict, node_dict, task_dict

_NOT_FOUND_REASONS = {"task_not_found", "no_agent"}


def _get_db(request: Request):
    return init_db(request.app.state.config.db_path)


def _conductor(request: Request) -> Conductor:
    return request.app.state.conductor


def _error_response(e: Exception) -> JSONResponse:
    if isinstance(e, ConductorError):
        status = 404 if e.reason in _NOT_FOUND_REASONS else 409
        return JSONResponse(e.to_dict(), status_code=status)
    return JSONResponse({"error": str(e)}, status_code=400)


def _flag(request: Request, name: str) -> bool:
    return request.query_params.get(name, "").lower() in {"1", "true", "yes"}


# ── Task Handlers ─────────────────────────────────────────────────────────────


async def api_list_tasks(request: Request):
    params = request.query_params
    db = _get_db(request)
    try:
        tasks = tasks_mod.list_tasks(db, prd_id=params.get("prd"), epic_id=params.get("epic"), status=params.get("status"))
        return JSONResponse([task_dict(t) for t in tasks])
    except ValueError as e:
        return _error_response(e)
    finally:
        db.close()


async def api_get_task(request: Request):
    task_id = request.path_params["task_id"]
    db = _get_db(request)
    try:
        task = tasks_mod.get_task(db, task_id)
        if not task:
            return JSONResponse({"error": "Task not found"}, status_code=404)
        td = task_dict(task)
        td["events"] = [event_dict(e) for e in tasks_mod.get_task_events(db, task_id)]
    finally:
        db.close()
    agent = _conductor(request).status(task_id)
    td["agent"] = agent_dict(agent) if agent else None
    return JSONResponse(td)


async def api_ready_tasks(request: Request):
    ready = _conductor(request).ready_tasks(request.query_params.get("prd"))
    return JSONResponse([node_dict(n) for n in ready])


async def api_prd_summary(request: Request):
    prd_id = request.path_params["prd_id"]
    db = _get_db(request)
    try:
        tasks = tasks_mod.list_tasks(db, prd_id=prd_id)
    finally:
        db.close()
    if not tasks:
        return JSONResponse({"error": "PRD has no tasks"}, status_code=404)

    counts = {s.value: 0 for s in TaskStatus}
    for t in tasks:
        counts[t.status.value] += 1
    total = len(tasks)
    finished = sum(1 for t in tasks if t.status.is_terminal)
    return JSONResponse({
        "prd_id": prd_id,
        "counts": counts,
        "total": total,
        "progress_pct": round(finished / total * 100, 1),
    })


# ── Graph and Schedule Handlers ───────────────────────────────────────────────


async def api_bottlenecks(request: Request):
    try:
        limit = int(request.query_params.get("limit", 10))
    except ValueError:
        return JSONResponse({"error": "limit must be an integer"}, status_code=400)
    ranked = _conductor(request).bottlenecks(limit, include_done=_flag(request, "include_done"))
    return JSONResponse([impact_dict(i) for i in ranked])


async def api_cycles(request: Request):
    cycles = _conductor(request).cycles()
    return JSONResponse({"has_cycles": bool(cycles), "cycles": cycles})


async def api_critical_path(request: Request):
    try:
        return JSONResponse(_conductor(request).critical_path(request.path_params["task_id"]))
    except ConductorError as e:
        return _error_response(e)


async def api_gantt(request: Request):
    cap = request.query_params.get("cap")
    try:
        cap_hours = float(cap) if cap else None
    except ValueError:
        return JSONResponse({"error": "cap must be a number of hours"}, status_code=400)
    data = _conductor(request).gantt(request.path_params.get("prd_id"), display_cap_hours=cap_hours)
    return JSONResponse(data)


# ── Agent Handlers ────────────────────────────────────────────────────────────


async def api_list_agents(request: Request):
    try:
        agents = _conductor(request).list_agents(request.query_params.get("status"))
    except ValueError as e:
        return _error_response(e)
    return JSONResponse([agent_dict(a) for a in agents])


async def api_get_agent(request: Request):
    task_id = request.path_params["task_id"]
    conductor = _conductor(request)
    agent = conductor.status(task_id)
    if not agent:
        return JSONResponse({"error": f"No agent for task: {task_id}"}, status_code=404)
    try:
        lines = int(request.query_params.get("lines", 20))
    except ValueError:
        return JSONResponse({"error": "lines must be an integer"}, status_code=400)
    result = agent_dict(agent)
    result["log_tail"] = conductor.log_tail(task_id, lines)
    result["events"] = [event_dict(e) for e in conductor.events(task_id)]
    return JSONResponse(result)


async def api_spawn_agent(request: Request):
    task_id = request.path_params["task_id"]
    body = await request.json() if await request.body() else {}
    try:
        agent = await run_in_threadpool(
            _conductor(request).spawn,
            task_id,
            timeout=body.get("timeout"),
            resume=bool(body.get("resume", False)),
            worktree=body.get("worktree"),
            instructions=body.get("instructions", ""),
        )
    except (ConductorError, GitError) as e:
        return _error_response(e)
    return JSONResponse(agent_dict(agent), status_code=201)


async def api_agent_action(request: Request):
    task_id = request.path_params["task_id"]
    action = request.path_params["action"]
    conductor = _conductor(request)
    body = await request.json() if await request.body() else {}

    if action not in {"kill", "reap", "reject", "reset"}:
        return JSONResponse({"error": f"Unknown action: {action}"}, status_code=404)

    def run():
        if action == "kill":
            return agent_dict(conductor.kill(task_id))
        if action == "reap":
            return agent_dict(conductor.reap(task_id, wait=False))
        if action == "reject":
            return agent_dict(conductor.reject(task_id, body.get("reason", "")))
        return conductor.reset(task_id)

    try:
        return JSONResponse(await run_in_threadpool(run))
    except (ConductorError, GitError) as e:
        return _error_response(e)


async def api_list_worktrees(request: Request):
    config = request.app.state.config
    try:
        return JSONResponse(worktrees_mod.list_task_worktrees(config.repo_path, config))
    except GitError as e:
        return _error_response(e)


# ── App ───────────────────────────────────────────────────────────────────────


def create_app(config: Config | None = None, conductor: Conductor | None = None) -> Starlette:
    config = config or get_config()
    conductor = conductor or Conductor(config)

    @asynccontextmanager
    async def lifespan(app: Starlette):
        yield
        conductor.shutdown()

    routes = [
        Route("/api/tasks", api_list_tasks),
        Route("/api/tasks/ready", api_ready_tasks),
        Route("/api/tasks/{task_id}", api_get_task),
        Route("/api/tasks/{task_id}/critical-path", api_critical_path),
        Route("/api/prds/{prd_id}/summary", api_prd_summary),
        Route("/api/prds/{prd_id}/gantt", api_gantt),
        Route("/api/gantt", api_gantt),
        Route("/api/graph/bottlenecks", api_bottlenecks),
        Route("/api/graph/cycles", api_cycles),
        Route("/api/agents", api_list_agents),
        Route("/api/agents/{task_id}", api_get_agent),
        Route("/api/agents/{task_id}/spawn", api_spawn_agent, methods=["POST"]),
        Route("/api/agents/{task_id}/{action}", api_agent_action, methods=["POST"]),
        Route("/api/worktrees", api_list_worktrees),
    ]
    app = Starlette(routes=routes, lifespan=lifespan)
    app.state.config = config
    app.state.conductor = conductor
    return app


def run_server(host: str = "127.0.0.1", port: int = 8787):
    app = create_app()
    uvicorn.run(app, host=host, port=port)
