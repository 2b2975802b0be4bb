from __future__ import annotations

import inspect
from collections.abc import Callable
from contextlib import asynccontextmanager

from fastapi import FastAPI


async def _run(func: Callable) -> None:
    if inspect.iscoroutinefunction(func):
        await func()
    else:
        func()


def _hooks(app: FastAPI) -> dict[str, list[Callable]]:
    hooks = getattr(app.state, "lifecycle_hooks", None)
    if hooks is not None:
        return hooks
    hooks = {"startup": [], "shutdown": []}
    app.state.lifecycle_hooks = hooks
    inner = app.router.lifespan_context

    @asynccontextmanager
    async def lifespan(a):
        for func in hooks["startup"]:
            await _run(func)
        try:
            async with inner(a) as state:
                yield state
        finally:
            for func in reversed(hooks["shutdown"]):
                await _run(func)

    app.router.lifespan_context = lifespan
    return hooks


def register_startup(app: FastAPI) -> Callable[[Callable], Callable]:
    """
    Register a startup hook on the app's lifespan.
    Usage:
        @register_startup(app)
        def _startup(): ...
    """
    def decorator(func: Callable) -> Callable:
        _hooks(app)["startup"].append(func)
        return func
    return decorator


def register_shutdown(app: FastAPI) -> Callable[[Callable], Callable]:
    """
    Register a shutdown hook, e.g. to dispose the engine pool.
    """
    def decorator(func: Callable) -> Callable:
        _hooks(app)["shutdown"].append(func)
        return func
    return decorator
