#!/usr/bin/env python3
"""dns-watch - DNS-driven configuration rendering

Renders a Jinja2 template whose variables are bound to live DNS lookups,
constants and literal lists. In watch mode the tool keeps polling DNS and
re-renders the output (then runs a command) whenever the resolved values
change, e.g. to regenerate a load balancer config when backend addresses move.

Usage:
    dns-watch [options] TEMPLATE

Variables:
    --var NAME[:HOST[:hn|fqdn]]   Host variable. NAME is bound to the IPv4
                                  addresses of HOST (HOST defaults to NAME).
                                  With "hn" or "fqdn" each address is replaced
                                  by its reverse DNS short hostname or FQDN.
                                  Values are sorted as plain strings, so
                                  "10.0.0.1" comes before "2.0.0.2".
    --const NAME=VALUE            Constant string.
    --list NAME=V1=V2=...         Literal list of strings.
    --config PATH                 YAML file (or directory of *.yaml files)
                                  declaring the same variable kinds:
                                    vars:
                                      - web:www.example.com
                                      - alias: db
                                        host: db.example.com
                                        reverse: fqdn
                                    consts:
                                      region: eu-west-1
                                    lists:
                                      ports: ["80", "443"]
                                    resolver:
                                      timeout_millis: 500
                                      attempts: 3
                                      ndots: 1
                                      recurse: true

    A host variable whose lookup fails renders as an empty value (null).

Environment variables:
    LOG_LEVEL               DEBUG, INFO, WARNING, ERROR (default: INFO)
    DNS_WATCH_TIMEOUT       Default for --timeout (default: 1)
    DNS_WATCH_ATTEMPTS      Default for --attempts (default: 2)
    DNS_WATCH_INTERVAL      Default for --interval (default: 1)
    DNS_WATCH_CONFIG_PATH   Default for --config (default: unset)
"""

from __future__ import annotations

import argparse
import ipaddress
import logging
import os
import shlex
import subprocess
import sys
import threading
import time
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

import dns.exception
import dns.flags
import dns.resolver
import jinja2
import yaml

# =============================================================================
# Configuration
# =============================================================================

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# Defaults for the resolver and watch options, in the units of the command line
# (seconds, or milliseconds with --use-millis).
DNS_WATCH_TIMEOUT = float(os.getenv("DNS_WATCH_TIMEOUT", "1"))
DNS_WATCH_ATTEMPTS = int(os.getenv("DNS_WATCH_ATTEMPTS", "2"))
DNS_WATCH_INTERVAL = float(os.getenv("DNS_WATCH_INTERVAL", "1"))
DNS_WATCH_CONFIG_PATH = os.getenv("DNS_WATCH_CONFIG_PATH", "")

STDOUT = "-"
TEMPLATE_SUFFIXES = (".j2", ".jinja", ".jinja2", ".tmpl")

# =============================================================================
# Logging Setup
# =============================================================================

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)

# =============================================================================
# Errors
# =============================================================================


class DNSWatchError(Exception):
    """Base class for dns-watch errors."""


class ConfigError(DNSWatchError):
    """Invalid variable specification or config file."""


class LookupFailed(DNSWatchError):
    """A forward or reverse DNS lookup did not produce an answer."""


class RenderError(DNSWatchError):
    """The template could not be compiled, rendered or written."""


class LaunchError(DNSWatchError):
    """The watch command could not be started."""


# =============================================================================
# Enums
# =============================================================================


class ReverseMode(Enum):
    """How resolved addresses of a host variable are presented.

    NONE:     Keep the IPv4 address strings.
    HOSTNAME: Replace each address by the first label of its PTR name.
    FQDN:     Replace each address by its full PTR name.
    """

    NONE = "none"
    HOSTNAME = "hn"
    FQDN = "fqdn"


class LoopState(Enum):
    INIT = "init"
    RENDER = "render"
    POLL = "poll"
    STOP = "stop"


# =============================================================================
# Data Classes
# =============================================================================


@dataclass(frozen=True)
class HostVar:
    """A variable bound to the addresses of a hostname."""

    alias: str
    hostname: str = ""
    reverse_mode: ReverseMode = ReverseMode.NONE

    def __post_init__(self) -> None:
        if not self.hostname:
            object.__setattr__(self, "hostname", self.alias)


@dataclass(frozen=True)
class ConstVar:
    name: str
    value: str


@dataclass(frozen=True)
class ListVar:
    name: str
    values: Tuple[str, ...] = ()


VariableSpec = Union[HostVar, ConstVar, ListVar]

# None means the lookup failed, which is not the same as an empty list.
ResolvedValue = Union[None, str, List[str]]
ResolvedContext = Dict[str, ResolvedValue]


@dataclass(frozen=True)
class ResolverConfig:
    """Lookup policy shared read-only by every lookup of a resolution pass."""

    timeout_millis: int = 1000
    attempts: int = 2
    ndots: int = 1
    recurse: bool = True

    @property
    def timeout_seconds(self) -> float:
        return self.timeout_millis / 1000.0

    @property
    def lifetime_seconds(self) -> float:
        """Total time budget of one lookup across all attempts."""
        return self.timeout_seconds * max(1, self.attempts)


@dataclass(frozen=True)
class WatchOptions:
    watch: bool = False
    command: Optional[str] = None
    interval_seconds: float = 1.0
    fast_start: bool = False


@dataclass(frozen=True)
class AppConfig:
    template_path: str
    destination: str
    specs: Tuple[VariableSpec, ...]
    resolver: ResolverConfig
    watch: WatchOptions


# =============================================================================
# DNS Resolver Interface and Implementations
# =============================================================================


class DNSResolver(ABC):
    """Abstract base class for DNS lookups.

    Implementations raise LookupFailed for any lookup that yields no usable
    answer. They must be safe to call from several threads at once.
    """

    @abstractmethod
    def lookup_host(self, hostname: str, config: ResolverConfig) -> List[str]:
        """Return the addresses that hostname resolves to."""
        pass

    @abstractmethod
    def reverse_lookup(self, address: str, config: ResolverConfig) -> List[str]:
        """Return the names that address maps back to, without the root dot."""
        pass


class DnsPythonResolver(DNSResolver):
    """DNS lookups through dnspython.

    A fresh dns.resolver.Resolver is built for every lookup so that concurrent
    lookups never share mutable resolver state.
    """

    def __init__(self, resolv_conf: str = "/etc/resolv.conf"):
        self._resolv_conf = resolv_conf

    def _make_resolver(self, config: ResolverConfig) -> dns.resolver.Resolver:
        try:
            resolver = dns.resolver.Resolver(filename=self._resolv_conf)
        except dns.exception.DNSException as e:
            raise LookupFailed(f"Cannot load resolver configuration: {e}") from e
        resolver.timeout = config.timeout_seconds
        resolver.lifetime = config.lifetime_seconds
        resolver.ndots = config.ndots
        resolver.flags = dns.flags.RD if config.recurse else 0
        return resolver

    def lookup_host(self, hostname: str, config: ResolverConfig) -> List[str]:
        resolver = self._make_resolver(config)
        try:
            answer = resolver.resolve(hostname, "A", search=True)
        except dns.resolver.NoAnswer:
            # Name exists but has no A records.
            return []
        except dns.exception.DNSException as e:
            raise LookupFailed(str(e)) from e
        return [rr.address for rr in answer]

    def reverse_lookup(self, address: str, config: ResolverConfig) -> List[str]:
        resolver = self._make_resolver(config)
        try:
            answer = resolver.resolve_address(address)
        except dns.exception.DNSException as e:
            raise LookupFailed(str(e)) from e
        return [rr.target.to_text(omit_final_dot=True) for rr in answer]


# =============================================================================
# Reverse Enrichment
# =============================================================================


def select_reverse_name(names: Sequence[str], address: str, mode: ReverseMode) -> str:
    """Pick the display value for an address from its reverse lookup names.

    Only the first name is used. HOSTNAME mode keeps the part before the first
    dot. Without a usable name the address itself is returned.
    """
    if not names or not names[0]:
        return address
    name = names[0]
    if mode == ReverseMode.HOSTNAME:
        return name.split(".", 1)[0]
    return name


def enrich_address(
    dns_resolver: DNSResolver, address: str, mode: ReverseMode, config: ResolverConfig
) -> str:
    try:
        names = dns_resolver.reverse_lookup(address, config)
    except LookupFailed as e:
        logger.debug(f"Reverse lookup of {address} failed: {e}")
        return address
    return select_reverse_name(names, address, mode)


def _is_ipv4(address: str) -> bool:
    try:
        return ipaddress.ip_address(address).version == 4
    except ValueError:
        return False


# =============================================================================
# Variable Resolver
# =============================================================================


class VariableResolver:
    """Turns variable specs into a freshly built context.

    Every host variable is looked up on its own worker thread and, when reverse
    enrichment is requested, every address of it on a nested worker. All
    workers are joined before resolve() returns. A failed lookup only turns its
    own variable into None.
    """

    def __init__(self, dns_resolver: DNSResolver):
        self.dns_resolver = dns_resolver

    def resolve(self, specs: Sequence[VariableSpec], config: ResolverConfig) -> ResolvedContext:
        host_specs = {i: s for i, s in enumerate(specs) if isinstance(s, HostVar)}
        host_values: Dict[int, ResolvedValue] = {}

        if host_specs:
            with ThreadPoolExecutor(
                max_workers=len(host_specs), thread_name_prefix="dns-watch-host"
            ) as pool:
                futures = {
                    i: pool.submit(self._resolve_host, spec, config)
                    for i, spec in host_specs.items()
                }
            for i, future in futures.items():
                try:
                    host_values[i] = future.result()
                except Exception as e:
                    logger.debug(f"Resolution worker for '{host_specs[i].alias}' failed: {e}")

        # Later specs overwrite earlier ones with the same name.
        context: ResolvedContext = {}
        for i, spec in enumerate(specs):
            if isinstance(spec, ConstVar):
                context[spec.name] = spec.value
            elif isinstance(spec, ListVar):
                context[spec.name] = list(spec.values)
            elif i in host_values:
                context[spec.alias] = host_values[i]
        return context

    def _resolve_host(self, spec: HostVar, config: ResolverConfig) -> ResolvedValue:
        try:
            found = self.dns_resolver.lookup_host(spec.hostname, config)
        except LookupFailed as e:
            logger.debug(f"{spec.alias} = {spec.hostname} => null : {e}")
            return None

        addresses = [a for a in found if _is_ipv4(a)]
        if spec.reverse_mode != ReverseMode.NONE and addresses:
            values = self._enrich(addresses, spec.reverse_mode, config)
        else:
            values = addresses

        # Plain string order, not numeric address order.
        values = sorted(values)
        logger.debug(f"{spec.alias} = {spec.hostname} => {values}")
        return values

    def _enrich(self, addresses: List[str], mode: ReverseMode, config: ResolverConfig) -> List[str]:
        with ThreadPoolExecutor(
            max_workers=len(addresses), thread_name_prefix="dns-watch-reverse"
        ) as pool:
            futures = [
                (address, pool.submit(enrich_address, self.dns_resolver, address, mode, config))
                for address in addresses
            ]

        names: List[str] = []
        for address, future in futures:
            try:
                names.append(future.result())
            except Exception as e:
                logger.debug(f"Reverse lookup worker for {address} failed: {e}")
                names.append(address)
        return names


def null_context(specs: Sequence[VariableSpec]) -> ResolvedContext:
    """Context binding every variable name to None, built without any lookup."""
    context: ResolvedContext = {}
    for spec in specs:
        context[spec.alias if isinstance(spec, HostVar) else spec.name] = None
    return context


# =============================================================================
# Context Snapshot
# =============================================================================


@dataclass(frozen=True)
class ContextSnapshot:
    """Immutable, key-order independent form of a context used for change detection."""

    entries: Tuple[Tuple[str, Any], ...]

    @classmethod
    def from_context(cls, context: ResolvedContext) -> "ContextSnapshot":
        items = sorted(context.items(), key=lambda item: item[0])
        return cls(entries=tuple((name, _freeze(value)) for name, value in items))


def _freeze(value: ResolvedValue) -> Any:
    if isinstance(value, list):
        return tuple(value)
    return value


def contexts_equal(a: ResolvedContext, b: ResolvedContext) -> bool:
    return ContextSnapshot.from_context(a) == ContextSnapshot.from_context(b)


# =============================================================================
# Template Rendering
# =============================================================================


def _finalize(value: Any) -> Any:
    # Failed lookups render as nothing rather than "None".
    return "" if value is None else value


class TemplateRenderer:
    """Compiles a Jinja2 template once and renders contexts into a destination."""

    def __init__(self, template_path: str):
        self.template_path = template_path
        path = Path(template_path)
        self._env = jinja2.Environment(
            loader=jinja2.FileSystemLoader(str(path.parent)),
            keep_trailing_newline=True,
            finalize=_finalize,
        )
        try:
            self._template = self._env.get_template(path.name)
        except (jinja2.TemplateError, OSError, UnicodeDecodeError) as e:
            raise RenderError(f"couldn't load template {template_path}: {e}") from e

    def render(self, context: ResolvedContext, destination: str) -> None:
        try:
            output = self._template.render(context)
        except jinja2.TemplateError as e:
            raise RenderError(f"couldn't render template {self.template_path}: {e}") from e

        if destination == STDOUT:
            sys.stdout.write(output)
            sys.stdout.flush()
            return

        # Replace the destination wholesale so readers never see a partial file.
        path = Path(destination)
        tmp_path = path.with_name(path.name + ".tmp")
        try:
            tmp_path.write_text(output, "utf-8")
            tmp_path.replace(path)
        except OSError as e:
            tmp_path.unlink(missing_ok=True)
            raise RenderError(f"couldn't write {destination}: {e}") from e


# =============================================================================
# Child Process Supervisor
# =============================================================================


class ChildHandle:
    """Completion handle of a launched command, resolved by its waiter thread."""

    def __init__(self, pid: int, command: str):
        self.pid = pid
        self.command = command
        self.returncode: Optional[int] = None
        self.error: Optional[BaseException] = None
        self._done = threading.Event()

    def _finish(
        self, returncode: Optional[int] = None, error: Optional[BaseException] = None
    ) -> None:
        self.returncode = returncode
        self.error = error
        self._done.set()

    def done(self) -> bool:
        return self._done.is_set()

    def wait(self, timeout: Optional[float] = None) -> Optional[int]:
        """Block until the command exits. Returns None on timeout or wait error."""
        self._done.wait(timeout)
        return self.returncode


class ChildProcessSupervisor:
    """Starts post-render commands and reaps them in the background.

    Starting is synchronous and a failure to start raises LaunchError. The exit
    status is only logged; it never feeds back into the caller.
    """

    def launch(self, command: str) -> ChildHandle:
        try:
            argv = shlex.split(command)
        except ValueError as e:
            raise LaunchError(f"couldn't parse watch command {command!r}: {e}") from e
        if not argv:
            raise LaunchError("watch command is empty")

        try:
            process = subprocess.Popen(
                argv,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
            )
        except (OSError, ValueError) as e:
            raise LaunchError(f"couldn't spawn watch process {command}: {e}") from e

        logger.debug(f"Watch process pid {process.pid} started")
        handle = ChildHandle(process.pid, command)
        waiter = threading.Thread(
            target=self._wait,
            args=(process, handle),
            name=f"dns-watch-child-{process.pid}",
            daemon=True,
        )
        waiter.start()
        return handle

    @staticmethod
    def _wait(process: subprocess.Popen, handle: ChildHandle) -> None:
        try:
            returncode = process.wait()
        except Exception as e:
            logger.warning(f"Watch process failed to terminate {handle.command}: {e}")
            handle._finish(error=e)
            return

        if returncode < 0:
            logger.debug(f"Watch process pid {handle.pid} terminated by signal {-returncode}")
        else:
            logger.debug(f"Watch process pid {handle.pid} terminated with exit status {returncode}")
        handle._finish(returncode=returncode)


# =============================================================================
# Reconciliation Loop
# =============================================================================


class Reconciler:
    """Render/poll state machine.

    INIT resolves (or, with fast start, fakes) the first context, RENDER writes
    it out and launches the watch command, POLL re-resolves every interval
    until the context differs from the last rendered one. Without watch mode
    the loop stops after the first render.
    """

    def __init__(
        self,
        *,
        variable_resolver: VariableResolver,
        renderer: TemplateRenderer,
        supervisor: ChildProcessSupervisor,
        specs: Sequence[VariableSpec],
        resolver_config: ResolverConfig,
        destination: str,
        watch: WatchOptions,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.variable_resolver = variable_resolver
        self.renderer = renderer
        self.supervisor = supervisor
        self.specs = tuple(specs)
        self.resolver_config = resolver_config
        self.destination = destination
        self.watch = watch
        self.sleep = sleep

        self.state = LoopState.INIT
        self.last_rendered: Optional[ContextSnapshot] = None
        self.render_count = 0
        self._pending: Optional[ResolvedContext] = None

    def resolve(self) -> ResolvedContext:
        return self.variable_resolver.resolve(self.specs, self.resolver_config)

    def step(self) -> LoopState:
        if self.state == LoopState.INIT:
            self._init()
        elif self.state == LoopState.RENDER:
            self._render()
        elif self.state == LoopState.POLL:
            self._poll()
        return self.state

    def run(self) -> None:
        while self.state != LoopState.STOP:
            self.step()

    def _init(self) -> None:
        if self.watch.watch and self.watch.fast_start:
            logger.debug("Fast start: first render uses empty values")
            self._pending = null_context(self.specs)
        else:
            self._pending = self.resolve()
        self.state = LoopState.RENDER

    def _render(self) -> None:
        context = self._pending if self._pending is not None else {}
        self.renderer.render(context, self.destination)
        self.last_rendered = ContextSnapshot.from_context(context)
        self._pending = None
        self.render_count += 1
        if self.destination != STDOUT:
            logger.debug(f"{self.destination} updated")

        if self.watch.command:
            self.supervisor.launch(self.watch.command)

        self.state = LoopState.POLL if self.watch.watch else LoopState.STOP

    def _poll(self) -> None:
        logger.debug(f"Sleep {self.watch.interval_seconds:g}s")
        self.sleep(self.watch.interval_seconds)
        context = self.resolve()
        if ContextSnapshot.from_context(context) != self.last_rendered:
            logger.info("DNS change detected, re-rendering")
            self._pending = context
            self.state = LoopState.RENDER


# =============================================================================
# Variable Spec Parsing
# =============================================================================


def _parse_bool(value: Any, *, default: bool = True) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "y", "on"}


def _parse_reverse_mode(value: str, spec: str) -> ReverseMode:
    mode = value.strip().lower()
    if mode in ("", "none"):
        return ReverseMode.NONE
    if mode in ("hn", "hostname"):
        return ReverseMode.HOSTNAME
    if mode == "fqdn":
        return ReverseMode.FQDN
    raise ConfigError(f"Invalid reverse mode '{value}' in '{spec}' (use hn or fqdn)")


def parse_host_var(value: str) -> HostVar:
    """Parse NAME[:HOST[:hn|fqdn]]."""
    parts = value.split(":", 2)
    alias = parts[0].strip()
    if not alias:
        raise ConfigError(f"Invalid host variable '{value}': missing NAME")
    hostname = parts[1].strip() if len(parts) > 1 else ""
    mode = _parse_reverse_mode(parts[2], value) if len(parts) > 2 else ReverseMode.NONE
    return HostVar(alias=alias, hostname=hostname, reverse_mode=mode)


def parse_const_var(value: str) -> ConstVar:
    """Parse NAME=VALUE. Only the first '=' separates, VALUE may contain more."""
    if "=" not in value:
        raise ConfigError(f"Invalid constant '{value}': expected NAME=VALUE")
    name, const_value = value.split("=", 1)
    if not name:
        raise ConfigError(f"Invalid constant '{value}': missing NAME")
    return ConstVar(name=name, value=const_value)


def parse_list_var(value: str) -> ListVar:
    """Parse NAME=V1=V2=... A bare NAME is an empty list."""
    name, *values = value.split("=")
    if not name:
        raise ConfigError(f"Invalid list '{value}': missing NAME")
    return ListVar(name=name, values=tuple(values))


# =============================================================================
# Config Files
# =============================================================================


def find_config_files(config_path: str) -> List[str]:
    """Return config_path itself, or the sorted YAML files of a directory."""
    path = Path(config_path)
    if not path.is_dir():
        return [config_path] if path.is_file() else []

    # *.yaml.template and dotfiles are drafts, never variable definitions.
    return sorted(
        str(entry)
        for entry in path.iterdir()
        if entry.is_file() and entry.suffix in (".yaml", ".yml") and not entry.name.startswith(".")
    )


def _specs_from_config(
    data: Dict[str, Any], source: str
) -> Tuple[List[VariableSpec], Dict[str, Any]]:
    specs: List[VariableSpec] = []

    for key in data:
        if key not in ("vars", "consts", "lists", "resolver"):
            logger.warning(f"Config file {source}: ignoring unknown key '{key}'")

    consts = data.get("consts") or {}
    if not isinstance(consts, dict):
        raise ConfigError(f"Config file {source}: 'consts' must be a mapping")
    for name, value in consts.items():
        specs.append(ConstVar(name=str(name), value="" if value is None else str(value)))

    lists = data.get("lists") or {}
    if not isinstance(lists, dict):
        raise ConfigError(f"Config file {source}: 'lists' must be a mapping")
    for name, values in lists.items():
        if not isinstance(values, list):
            raise ConfigError(f"Config file {source}: list '{name}' must be a sequence")
        specs.append(ListVar(name=str(name), values=tuple(str(v) for v in values)))

    host_vars = data.get("vars") or []
    if not isinstance(host_vars, list):
        raise ConfigError(f"Config file {source}: 'vars' must be a sequence")
    for item in host_vars:
        if isinstance(item, str):
            specs.append(parse_host_var(item))
        elif isinstance(item, dict):
            alias = str(item.get("alias") or "").strip()
            if not alias:
                raise ConfigError(f"Config file {source}: host variable without alias: {item}")
            specs.append(
                HostVar(
                    alias=alias,
                    hostname=str(item.get("host") or "").strip(),
                    reverse_mode=_parse_reverse_mode(str(item.get("reverse") or ""), alias),
                )
            )
        else:
            raise ConfigError(f"Config file {source}: malformed host variable: {item}")

    resolver = data.get("resolver") or {}
    if not isinstance(resolver, dict):
        raise ConfigError(f"Config file {source}: 'resolver' must be a mapping")

    return specs, dict(resolver)


def load_config_files(config_path: str) -> Tuple[List[VariableSpec], Dict[str, Any]]:
    """Load variable specs and resolver settings from YAML config file(s).

    Files are read in sorted order; resolver settings of later files override
    earlier ones.
    """
    config_files = find_config_files(config_path)
    if not config_files:
        raise ConfigError(f"No config files found at {config_path}")

    specs: List[VariableSpec] = []
    settings: Dict[str, Any] = {}
    for config_file in config_files:
        try:
            with open(config_file, "r") as f:
                data = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(f"Failed to load config file {config_file}: {e}") from e

        if not data:
            logger.warning(f"Config file {config_file} is empty")
            continue
        if not isinstance(data, dict):
            raise ConfigError(f"Config file {config_file} must contain a mapping")

        file_specs, file_settings = _specs_from_config(data, config_file)
        specs.extend(file_specs)
        settings.update(file_settings)

    return specs, settings


# =============================================================================
# Command Line
# =============================================================================


def default_output_path(template_path: str) -> str:
    """Strip a template suffix from the template name, or append '.out'."""
    for suffix in TEMPLATE_SUFFIXES:
        if template_path.endswith(suffix):
            return template_path[: -len(suffix)]
    return template_path + ".out"


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="dns-watch",
        description=(
            "Writes a file based on a Jinja2 template used to substitute in "
            "resolved IP addresses."
        ),
    )
    parser.add_argument("template", metavar="TEMPLATE", help="Jinja2 template file")
    parser.add_argument(
        "-v",
        "--var",
        action="append",
        default=[],
        metavar="NAME[:HOST[:hn|fqdn]]",
        help=(
            "define a host variable NAME bound to the IPv4 addresses of HOST "
            "(HOST defaults to NAME); 'hn' or 'fqdn' replaces each address by "
            "its reverse DNS hostname or FQDN"
        ),
    )
    parser.add_argument(
        "-c",
        "--const",
        action="append",
        default=[],
        metavar="NAME=VALUE",
        help="define a constant NAME with the value VALUE",
    )
    parser.add_argument(
        "-l",
        "--list",
        action="append",
        default=[],
        metavar="NAME=V1=V2=...",
        help="define a list NAME with the values V1, V2, ...",
    )
    parser.add_argument(
        "--config",
        default=DNS_WATCH_CONFIG_PATH or None,
        metavar="PATH",
        help="YAML file or directory of *.yaml files with variables and resolver settings",
    )
    parser.add_argument(
        "-w", "--watch", metavar="CMD", help="run CMD every time the output is updated"
    )
    parser.add_argument(
        "-o",
        "--out",
        metavar="PATH",
        help=(
            "output file, '-' for standard out (default: template name with "
            "its .j2/.jinja/.jinja2/.tmpl suffix removed, or '.out' appended)"
        ),
    )
    parser.add_argument(
        "-t",
        "--timeout",
        type=float,
        metavar="SECS",
        help=f"DNS lookup timeout per attempt (default: {DNS_WATCH_TIMEOUT:g})",
    )
    parser.add_argument(
        "--attempts",
        type=int,
        help=f"DNS lookup attempts (default: {DNS_WATCH_ATTEMPTS})",
    )
    parser.add_argument(
        "--ndots",
        type=int,
        help="dots a name needs before it is tried as absolute first (default: 1)",
    )
    parser.add_argument(
        "--recurse",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="request recursion from the name server (default: on)",
    )
    parser.add_argument(
        "--use-millis",
        action="store_true",
        help="interpret --timeout and --interval as milliseconds",
    )
    parser.add_argument(
        "-i",
        "--interval",
        type=float,
        metavar="SECS",
        help=f"interval between DNS checks with --watch (default: {DNS_WATCH_INTERVAL:g})",
    )
    parser.add_argument(
        "--fast-start",
        action="store_true",
        help="with --watch, render once with empty values before the first lookup",
    )
    parser.add_argument("-d", "--debug", action="store_true", help="enable debug output")
    return parser


def _setting_int(settings: Dict[str, Any], key: str) -> Optional[int]:
    if settings.get(key) is None:
        return None
    try:
        return int(settings[key])
    except (TypeError, ValueError) as e:
        raise ConfigError(f"Invalid resolver setting {key}={settings[key]!r}") from e


def build_resolver_config(args: argparse.Namespace, settings: Dict[str, Any]) -> ResolverConfig:
    """Merge command line, config file and environment resolver settings.

    Command line values win over config file values, which win over the
    environment defaults.
    """
    for key in settings:
        if key not in ("timeout_millis", "attempts", "ndots", "recurse"):
            logger.warning(f"Ignoring unknown resolver setting '{key}'")

    if args.timeout is not None:
        timeout_millis = _to_millis(args.timeout, args.use_millis)
    else:
        timeout_millis = _setting_int(settings, "timeout_millis")
        if timeout_millis is None:
            timeout_millis = _to_millis(DNS_WATCH_TIMEOUT, args.use_millis)

    attempts = args.attempts
    if attempts is None:
        attempts = _setting_int(settings, "attempts")
    if attempts is None:
        attempts = DNS_WATCH_ATTEMPTS

    ndots = args.ndots
    if ndots is None:
        ndots = _setting_int(settings, "ndots")
    if ndots is None:
        ndots = 1

    recurse = args.recurse
    if recurse is None:
        recurse = _parse_bool(settings.get("recurse"), default=True)

    return ResolverConfig(
        timeout_millis=timeout_millis, attempts=attempts, ndots=ndots, recurse=recurse
    )


def _to_millis(value: float, use_millis: bool) -> int:
    return int(round(value if use_millis else value * 1000))


def build_config(args: argparse.Namespace) -> AppConfig:
    specs: List[VariableSpec] = []
    settings: Dict[str, Any] = {}
    if args.config:
        specs, settings = load_config_files(args.config)

    # Command line specs come last so they win on duplicate names.
    specs.extend(parse_const_var(v) for v in args.const)
    specs.extend(parse_list_var(v) for v in args.list)
    specs.extend(parse_host_var(v) for v in args.var)

    interval = args.interval if args.interval is not None else DNS_WATCH_INTERVAL
    interval_seconds = interval / 1000.0 if args.use_millis else interval

    return AppConfig(
        template_path=args.template,
        destination=args.out or default_output_path(args.template),
        specs=tuple(specs),
        resolver=build_resolver_config(args, settings),
        watch=WatchOptions(
            watch=args.watch is not None,
            command=args.watch,
            interval_seconds=interval_seconds,
            fast_start=args.fast_start,
        ),
    )


# =============================================================================
# Main
# =============================================================================


def validate_config(config: AppConfig) -> bool:
    """Validate configuration."""
    errors = []

    if not Path(config.template_path).is_file():
        errors.append(f"Template not found: {config.template_path}")

    if config.watch.watch:
        if config.destination == STDOUT:
            errors.append("Cannot use --watch with output to standard out")
        if not (config.watch.command or "").strip():
            errors.append("--watch requires a command")
        if config.watch.interval_seconds <= 0:
            errors.append("--interval must be positive")
    elif config.watch.fast_start:
        logger.warning("--fast-start has no effect without --watch")

    if config.resolver.timeout_millis <= 0:
        errors.append("--timeout must be positive")
    if config.resolver.attempts < 1:
        errors.append("--attempts must be at least 1")
    if config.resolver.ndots < 0:
        errors.append("--ndots must not be negative")

    if errors:
        for error in errors:
            logger.error(error)
        return False

    return True


def create_reconciler(
    config: AppConfig, dns_resolver: Optional[DNSResolver] = None
) -> Reconciler:
    """Wire the production collaborators into a reconciliation loop."""
    return Reconciler(
        variable_resolver=VariableResolver(dns_resolver or DnsPythonResolver()),
        renderer=TemplateRenderer(config.template_path),
        supervisor=ChildProcessSupervisor(),
        specs=config.specs,
        resolver_config=config.resolver,
        destination=config.destination,
        watch=config.watch,
    )


def _describe(spec: VariableSpec) -> str:
    if isinstance(spec, HostVar):
        suffix = "" if spec.reverse_mode == ReverseMode.NONE else f" ({spec.reverse_mode.value})"
        return f"{spec.alias}={spec.hostname}{suffix}"
    return spec.name


def main(argv: Optional[Sequence[str]] = None) -> None:
    """Main entry point."""
    args = build_arg_parser().parse_args(argv)
    if args.debug:
        logging.getLogger().setLevel(logging.DEBUG)

    try:
        config = build_config(args)
    except ConfigError as e:
        logger.error(str(e))
        sys.exit(1)

    if not validate_config(config):
        logger.error("Configuration validation failed")
        sys.exit(1)

    logger.info(f"dns-watch: {config.template_path} -> {config.destination}")
    if config.specs:
        logger.info(f"Variables: {', '.join(_describe(s) for s in config.specs)}")
    logger.info(
        f"Resolver: timeout {config.resolver.timeout_millis}ms, "
        f"{config.resolver.attempts} attempt(s), ndots {config.resolver.ndots}, "
        f"recurse {'on' if config.resolver.recurse else 'off'}"
    )
    if config.watch.watch:
        logger.info(f"Watch command: {config.watch.command}")
        logger.info(f"Poll interval: {config.watch.interval_seconds:g}s")

    try:
        create_reconciler(config).run()
    except KeyboardInterrupt:
        logger.info("Shutting down gracefully...")
    except DNSWatchError as e:
        logger.error(f"Fatal error: {e}")
        sys.exit(1)
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
