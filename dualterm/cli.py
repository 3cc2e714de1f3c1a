"""dualterm command-line interface."""
from __future__ import annotations

import argparse
import getpass
import json
import logging
import os
import queue
import sys
import threading
import time
from typing import Any, List, Optional

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from dualterm.errors import TransportError
from dualterm.models.config import ConnectionConfig, KeyFileAuth, PasswordAuth, SerialConfig, SshConfig, describe
from dualterm.models.events import (
	Closed,
	ConnectionEvent,
	Data,
	Error,
	HostKeyMismatch,
	HostKeyPrompt,
	RespondTrust,
	Send,
	StateChanged,
)
from dualterm.models.host_key import TrustDecision
from dualterm.runtime import ConnectionRuntime
from dualterm.serial_transport import list_serial_ports
from dualterm.settings import EVENT_TICK_INTERVAL, HOST_KEY_PROMPT_TIMEOUT, KNOWN_HOSTS_PATH, LINE_ENDINGS, SYSTEM_KNOWN_HOSTS_PATH
from dualterm.trust_store import HostKeyTrustStore

LOG_FORMAT = "[%(asctime)s] %(levelname)-5s %(name)s - %(message)s"

logger = logging.getLogger(__name__)


def _configure_logging(level: str) -> None:
	logging.basicConfig(level=getattr(logging, level.upper(), logging.WARNING), format=LOG_FORMAT)


def _open_store(args: argparse.Namespace) -> HostKeyTrustStore:
	return HostKeyTrustStore.from_path(args.known_hosts, system_known_hosts=SYSTEM_KNOWN_HOSTS_PATH)


# ---------------------------------------------------------------------
# Listing commands
# ---------------------------------------------------------------------
def _cmd_ports(args: argparse.Namespace) -> int:
	data = [port.to_dict() for port in list_serial_ports()]
	if args.json:
		json.dump(data, sys.stdout, indent=2)
		sys.stdout.write("\n")
		return 0
	table = Table(title="Serial Ports", show_lines=False)
	for column in ("device", "manufacturer", "description"):
		table.add_column(column.upper())
	for entry in data:
		table.add_row(entry["device"], entry["manufacturer"], entry["description"])
	Console().print(table)
	return 0


def _cmd_known_hosts(args: argparse.Namespace) -> int:
	store = _open_store(args)
	if args.action == "forget":
		if not args.host:
			raise ValueError("forget needs a host")
		removed = store.forget(args.host, args.port)
		Console(stderr=True).print(f"{args.host}:{args.port} " + ("forgotten" if removed else "was not trusted"))
		return 0 if removed else 1

	data = [record.to_dict() for record in store.records()]
	if args.json:
		json.dump(data, sys.stdout, indent=2)
		sys.stdout.write("\n")
		return 0
	table = Table(title="Known Hosts", show_lines=False)
	for column in ("host", "port", "algorithm", "fingerprint", "first_seen", "last_confirmed"):
		table.add_column(column.upper())
	for entry in data:
		table.add_row(*(str(entry[column]) for column in ("host", "port", "algorithm", "fingerprint", "first_seen", "last_confirmed")))
	Console().print(table)
	return 0


# ---------------------------------------------------------------------
# Terminal sessions
# ---------------------------------------------------------------------
class TerminalSession:
	"""Presentation loop for one connection on a plain terminal.

	Received bytes are written raw to stdout; stdin lines are sent with the
	chosen line ending. While a host-key prompt is pending, the next line
	answers it instead of being sent.
	"""

	def __init__(
		self,
		runtime: ConnectionRuntime,
		config: ConnectionConfig,
		*,
		line_ending: bytes = b"\n",
		console: Optional[Console] = None,
		stdin: Any = None,
		stdout: Any = None,
	) -> None:
		self.runtime = runtime
		self.config = config
		self.line_ending = line_ending
		self.console = console or Console(stderr=True)
		self.stdin = stdin if stdin is not None else sys.stdin
		self.stdout = stdout if stdout is not None else sys.stdout.buffer
		self.lines: "queue.Queue[Optional[str]]" = queue.Queue()
		self.awaiting: Optional[ConnectionEvent] = None
		self.closed = False
		self.actor = None

	def _pump_stdin(self) -> None:
		for line in self.stdin:
			self.lines.put(line.rstrip("\r\n"))
		self.lines.put(None)

	def handle(self, name: str, event: ConnectionEvent) -> None:
		if isinstance(event, Data):
			self.stdout.write(event.data)
			self.stdout.flush()
		elif isinstance(event, StateChanged):
			self.console.print(f"[dim]-- {event.state.value}[/dim]")
		elif isinstance(event, Error):
			self.console.print(f"[red]error ({event.kind.value}): {escape(event.message)}[/red]")
		elif isinstance(event, HostKeyPrompt):
			self.awaiting = event
			self.console.print(
				f"[yellow]The authenticity of {event.host}:{event.port} can't be established.\n"
				f"{event.algorithm} key fingerprint is {event.fingerprint}.\n"
				"Trust it? \\[a]ccept once / \\[r]emember / \\[n]o[/yellow]"
			)
		elif isinstance(event, HostKeyMismatch):
			self.awaiting = event
			self.console.print(
				f"[bold red]WARNING: the host key for {event.host}:{event.port} has changed!\n"
				f"trusted: {event.old}\npresented: {event.new} ({event.algorithm})\n"
				"Type 'override' to replace the trusted key, anything else rejects.[/bold red]"
			)
		elif isinstance(event, Closed):
			self.closed = True

	def _answer(self, line: str) -> None:
		prompt, self.awaiting = self.awaiting, None
		if isinstance(prompt, HostKeyMismatch):
			decision = TrustDecision.OVERRIDE if line.strip().lower() == "override" else TrustDecision.REJECT
		else:
			try:
				decision = TrustDecision.parse(line)
			except ValueError:
				decision = TrustDecision.REJECT
			if decision is TrustDecision.OVERRIDE:
				decision = TrustDecision.REJECT
		self.runtime.submit(self.actor, RespondTrust(decision))

	def run(self) -> int:
		self.actor = self.runtime.open(self.config)
		self.console.print(f"[green]Connecting to {describe(self.config)}[/green] (Ctrl-D to quit)")
		threading.Thread(target=self._pump_stdin, name="dualterm-stdin", daemon=True).start()
		try:
			while not self.closed:
				self.runtime.bridge.tick(self.handle)
				while not self.closed:
					try:
						line = self.lines.get_nowait()
					except queue.Empty:
						break
					if line is None:
						self.runtime.close(self.actor)
						self.runtime.bridge.tick(self.handle)
						return 0
					if self.awaiting is not None:
						self._answer(line)
					else:
						self.runtime.submit(self.actor, Send(line.encode("utf-8") + self.line_ending))
				time.sleep(EVENT_TICK_INTERVAL)
		except KeyboardInterrupt:
			self.runtime.close(self.actor)
			self.runtime.bridge.tick(self.handle)
		return 0


def _run_session(args: argparse.Namespace, config: ConnectionConfig, store: Optional[HostKeyTrustStore] = None) -> int:
	runtime = ConnectionRuntime(trust_store=store, prompt_timeout=args.prompt_timeout)
	try:
		return TerminalSession(runtime, config, line_ending=LINE_ENDINGS[args.line_ending]).run()
	finally:
		runtime.shutdown()


def _cmd_serial(args: argparse.Namespace) -> int:
	config = SerialConfig.from_params(
		args.path,
		baud=args.baud,
		data_bits=args.data_bits,
		parity=args.parity,
		stop_bits=args.stop_bits,
		flow_control=args.flow_control,
	)
	return _run_session(args, config)


def _ssh_auth(args: argparse.Namespace):
	if args.identity:
		passphrase = os.environ.get(args.passphrase_env) if args.passphrase_env else None
		return KeyFileAuth(args.identity, passphrase=passphrase)
	if args.password_env:
		password = os.environ.get(args.password_env)
		if password is None:
			raise ValueError(f"environment variable {args.password_env} is not set")
		return PasswordAuth(password)
	return PasswordAuth(getpass.getpass(f"{args.username}@{args.host}'s password: "))


def _cmd_ssh(args: argparse.Namespace) -> int:
	config = SshConfig(
		host=args.host,
		username=args.username,
		auth=_ssh_auth(args),
		port=args.port,
		connect_timeout=args.connect_timeout,
	)
	return _run_session(args, config, _open_store(args))


def _cmd_serve(args: argparse.Namespace) -> int:
	import uvicorn

	uvicorn.run("dualterm.api:app", host=args.host, port=args.port, log_level=args.log_level.lower())
	return 0


def _build_parser() -> argparse.ArgumentParser:
	parser = argparse.ArgumentParser(description="dualterm serial and SSH terminal")
	parser.add_argument("--log-level", default="WARNING", help="Logging level (DEBUG, INFO, WARNING, ...)")
	parser.add_argument("--known-hosts", default=str(KNOWN_HOSTS_PATH), help="Path to the trusted host-key CSV")
	parser.add_argument(
		"--prompt-timeout",
		type=float,
		default=HOST_KEY_PROMPT_TIMEOUT,
		help="Seconds to wait for a host-key answer before rejecting",
	)
	sub = parser.add_subparsers(dest="command", required=True)

	ports = sub.add_parser("ports", help="List serial ports")
	ports.add_argument("--json", action="store_true", help="Output JSON")
	ports.set_defaults(handler=_cmd_ports)

	ser = sub.add_parser("serial", help="Open a serial terminal")
	ser.add_argument("path", help="Serial device, e.g. /dev/ttyUSB0 or COM3")
	ser.add_argument("--baud", type=int, default=115_200)
	ser.add_argument("--data-bits", type=int, default=8, choices=(5, 6, 7, 8))
	ser.add_argument("--parity", default="none", choices=("none", "even", "odd", "mark", "space"))
	ser.add_argument("--stop-bits", type=float, default=1, choices=(1, 1.5, 2))
	ser.add_argument("--flow-control", default="none", help="none, hardware (RTS/CTS) or software (XON/XOFF)")
	ser.add_argument("--line-ending", default="lf", choices=sorted(LINE_ENDINGS))
	ser.set_defaults(handler=_cmd_serial)

	ssh = sub.add_parser("ssh", help="Open an SSH shell")
	ssh.add_argument("host")
	ssh.add_argument("-u", "--username", required=True)
	ssh.add_argument("-p", "--port", type=int, default=22)
	ssh.add_argument("-i", "--identity", help="Private key file")
	ssh.add_argument("--passphrase-env", help="Environment variable holding the key passphrase")
	ssh.add_argument("--password-env", help="Environment variable holding the password")
	ssh.add_argument("--connect-timeout", type=float, help="TCP connect timeout seconds")
	ssh.add_argument("--line-ending", default="lf", choices=sorted(LINE_ENDINGS))
	ssh.set_defaults(handler=_cmd_ssh)

	known = sub.add_parser("known-hosts", help="Inspect trusted SSH host keys")
	known.add_argument("action", choices=("list", "forget"))
	known.add_argument("host", nargs="?")
	known.add_argument("--port", type=int, default=22)
	known.add_argument("--json", action="store_true", help="Output JSON")
	known.set_defaults(handler=_cmd_known_hosts)

	serve = sub.add_parser("serve", help="Run the HTTP API")
	serve.add_argument("--host", default="127.0.0.1")
	serve.add_argument("--port", type=int, default=8000)
	serve.set_defaults(handler=_cmd_serve)

	return parser


def main(argv: Optional[List[str]] = None) -> int:
	parser = _build_parser()
	args = parser.parse_args(argv)
	_configure_logging(args.log_level)
	try:
		return args.handler(args)
	except ValueError as exc:
		parser.error(str(exc))
	except TransportError as exc:
		Console(stderr=True).print(f"[red]{exc}[/red]")
		return 1


if __name__ == "__main__":
	sys.exit(main())
