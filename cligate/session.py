"""
Proxy session: one listener on a loopback port, bound to one CLI invocation.

The configuration snapshot is frozen when the session starts; changes to
the config file are only seen by the next session.
"""

from __future__ import annotations

import asyncio
import os
import shutil
import socket
from collections.abc import Mapping, Sequence
from typing import Dict, Optional

import httpx
import uvicorn

from cligate.logging_config import logger
from cligate.models.profile import ConfigSnapshot
from cligate.models.provider import CliFamily
from cligate.request_log import RequestLog
from cligate.routes import create_app
from cligate.settings import settings
from cligate.upstream import ConnectionRegistry

# Placeholder credential handed to the CLI; real credentials stay in the proxy.
PROXY_AUTH_TOKEN = "cligate-proxy"

CONTEXT_WINDOW_VAR = "ANTHROPIC_MAX_CONTEXT_WINDOW"

CLI_COMMANDS: Dict[CliFamily, str] = {
    CliFamily.CLAUDE: "claude",
    CliFamily.CODEX: "codex",
    CliFamily.OPENCODE: "opencode",
}


def merge_cli_env_vars(snapshot: ConfigSnapshot) -> Dict[str, str]:
    """
    Merge the CLI-family env vars of the default chain's providers.

    The first provider to set a variable wins, except for
    ANTHROPIC_MAX_CONTEXT_WINDOW where the smallest numeric value wins.
    """
    merged: Dict[str, str] = {}
    min_window: Optional[int] = None
    for provider_id in snapshot.profile.providers:
        provider = snapshot.provider(provider_id)
        for name, value in provider.env_vars_for(snapshot.cli_family).items():
            if not value:
                continue
            if name == CONTEXT_WINDOW_VAR:
                try:
                    window = int(value)
                except ValueError:
                    logger.warning(
                        "session: ignoring non-numeric %s=%r from %s", name, value, provider_id
                    )
                    continue
                if min_window is None or window < min_window:
                    min_window = window
                continue
            merged.setdefault(name, value)
    if min_window is not None:
        merged[CONTEXT_WINDOW_VAR] = str(min_window)
    return merged


def build_cli_env(
    snapshot: ConfigSnapshot,
    base_url: str,
    base_env: Optional[Mapping[str, str]] = None,
) -> Dict[str, str]:
    """Environment for the CLI subprocess, pointing it at the proxy."""
    env = dict(os.environ if base_env is None else base_env)
    env.update(merge_cli_env_vars(snapshot))
    if snapshot.cli_family is CliFamily.CLAUDE:
        env["ANTHROPIC_BASE_URL"] = base_url
        env["ANTHROPIC_AUTH_TOKEN"] = PROXY_AUTH_TOKEN
    else:
        env["OPENAI_BASE_URL"] = base_url + "/v1"
        env["OPENAI_API_KEY"] = PROXY_AUTH_TOKEN
    return env


def bind_socket(host: str, port: int = 0) -> socket.socket:
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
    try:
        sock.bind((host, port))
    except OSError:
        sock.close()
        raise
    sock.set_inheritable(True)
    return sock


class ProxySession:
    """
    Run the listener for one snapshot until `stop` is called.

    Usage:

        async with ProxySession(snapshot) as session:
            ... session.base_url ...
    """

    def __init__(
        self,
        snapshot: ConfigSnapshot,
        *,
        host: Optional[str] = None,
        port: Optional[int] = None,
        request_log: Optional[RequestLog] = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.snapshot = snapshot
        self.host = host or settings.host
        self.port = settings.port if port is None else port
        self.registry = ConnectionRegistry()
        self.app = create_app(
            snapshot,
            request_log=request_log,
            registry=self.registry,
            transport=transport,
        )
        self._server: uvicorn.Server | None = None
        self._task: asyncio.Task[None] | None = None
        self._socket: socket.socket | None = None

    @property
    def bound_port(self) -> int:
        if self._socket is None:
            raise RuntimeError("proxy session is not started")
        return self._socket.getsockname()[1]

    @property
    def base_url(self) -> str:
        return f"http://{self.host}:{self.bound_port}"

    async def start(self) -> str:
        self._socket = bind_socket(self.host, self.port)
        config = uvicorn.Config(
            self.app,
            log_config=None,
            access_log=False,
            timeout_graceful_shutdown=int(settings.shutdown_grace_seconds),
        )
        self._server = uvicorn.Server(config)
        self._task = asyncio.create_task(self._server.serve(sockets=[self._socket]))
        while not self._server.started:
            if self._task.done():
                # serve() ended before startup completed; surface its error.
                await self._task
                raise RuntimeError("proxy listener exited during startup")
            await asyncio.sleep(0.01)
        logger.info(
            "session: proxy for profile %s (%s) listening on %s",
            self.snapshot.profile.name,
            self.snapshot.cli_family.value,
            self.base_url,
        )
        return self.base_url

    async def stop(self) -> None:
        """
        Let in-flight requests drain for the grace period, then force-close
        whatever upstream connections are still open.
        """
        if self._server is None or self._task is None:
            return
        self._server.should_exit = True
        grace = settings.shutdown_grace_seconds
        try:
            await asyncio.wait_for(asyncio.shield(self._task), timeout=grace + 1)
        except asyncio.TimeoutError:
            logger.warning("session: listener did not stop within %.1fs, cancelling", grace)
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
        finally:
            await self.registry.aclose_all()
            if self._socket is not None:
                self._socket.close()
                self._socket = None
            self._server = None
            self._task = None
        logger.info("session: proxy for profile %s stopped", self.snapshot.profile.name)

    async def __aenter__(self) -> "ProxySession":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.stop()


async def serve(snapshot: ConfigSnapshot, *, port: Optional[int] = None) -> None:
    """Run the proxy alone until the process is interrupted."""
    async with ProxySession(snapshot, port=port) as session:
        print(session.base_url, flush=True)
        await asyncio.Event().wait()


async def run_cli(
    snapshot: ConfigSnapshot,
    cli_args: Sequence[str] = (),
    *,
    command: Optional[str] = None,
) -> int:
    """
    Start a session, run the CLI against it and return the CLI's exit code.
    The session stops when the CLI exits.
    """
    command = command or CLI_COMMANDS[snapshot.cli_family]
    executable = shutil.which(command)
    if executable is None:
        raise FileNotFoundError(f"{command} not found in PATH")

    async with ProxySession(snapshot) as session:
        env = build_cli_env(snapshot, session.base_url)
        logger.info("session: launching %s %s", executable, " ".join(cli_args))
        process = await asyncio.create_subprocess_exec(executable, *cli_args, env=env)
        try:
            return await process.wait()
        except asyncio.CancelledError:
            if process.returncode is None:
                process.terminate()
                await process.wait()
            raise


__all__ = [
    "CLI_COMMANDS",
    "PROXY_AUTH_TOKEN",
    "ProxySession",
    "bind_socket",
    "build_cli_env",
    "merge_cli_env_vars",
    "run_cli",
    "serve",
]
