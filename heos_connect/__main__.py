#!/usr/bin/env python3

# Copyright (c) 2023 Samuel J. McKelvie
#
# MIT License - See LICENSE file accompanying this package.
#

from __future__ import annotations

import os
import sys
import argparse
import json
import asyncio
import logging
from signal import SIGINT, SIGTERM

from heos_connect.internal_types import *

from heos_connect import (
    __version__ as pkg_version,
    HeosDiscovery,
    HeosSession,
    HeosEvent,
    DiscoveredDevice,
    HEOS_PORT,
    DEFAULT_DISCOVERY_TIMEOUT_MS,
  )
from heos_connect.interfaces import get_local_ip_addresses_and_interfaces

class CmdExitError(RuntimeError):
    exit_code: int

    def __init__(self, exit_code: int, msg: Optional[str]=None):
        if msg is None:
            msg = f"Command exited with return code {exit_code}"
        super().__init__(msg)
        self.exit_code = exit_code

class ArgparseExitError(CmdExitError):
    pass

class NoExitArgumentParser(argparse.ArgumentParser):
    def exit(self, status=0, message=None):
        if message:
            self._print_message(message, sys.stderr)
        raise ArgparseExitError(status, message)

def device_summary(device: DiscoveredDevice) -> JsonableDict:
    summary: JsonableDict = {
        "address": device.address,
        "port": device.port,
    }
    headers: JsonableDict = dict(device.headers)
    if len(headers) > 0:
        summary["headers"] = headers
    return summary

class CommandHandler:
    _argv: Optional[Sequence[str]]
    _parser: argparse.ArgumentParser
    _args: argparse.Namespace
    _provide_traceback: bool = True

    def __init__(self, argv: Optional[Sequence[str]]=None):
        self._argv = argv

    async def cmd_bare(self) -> int:
        print("A command is required", file=sys.stderr)
        return 1

    def _parse_arg_params(self, arg_params: List[str]) -> Dict[str, str]:
        params: Dict[str, str] = {}
        for param_assignment in arg_params:
            if not '=' in param_assignment:
                raise CmdExitError(1, f"Command parameter must be <name>=<value>: '{param_assignment}'")
            name, value = param_assignment.split('=', 1)
            params[name] = value
        return params

    def _create_discovery(self) -> HeosDiscovery:
        interface: Optional[str] = self._args.interface
        return HeosDiscovery(multicast_interface=interface)

    async def _connect(self) -> HeosSession:
        host: Optional[str] = self._args.host
        port: int = self._args.port
        if host is None:
            logging.debug("No host specified; discovering a device")
            devices = await self._create_discovery().discover(max_devices=1, timeout_ms=self._args.timeout_ms)
            device: Union[DiscoveredDevice, str] = devices[0]
        else:
            device = host
        return await HeosSession.connect(device, command_port=port, connect_timeout=self._args.connect_timeout)

    async def cmd_discover(self) -> int:
        max_devices: int = self._args.max_devices
        timeout_ms: float = self._args.timeout_ms

        def on_discover(device: DiscoveredDevice) -> None:
            print(json.dumps(device_summary(device), indent=2, sort_keys=True))
            sys.stdout.flush()

        devices = await self._create_discovery().discover(
            max_devices=max_devices,
            timeout_ms=timeout_ms,
            on_discover=on_discover,
          )
        logging.debug(f"Discovered {len(devices)} device(s)")
        return 0

    async def cmd_command(self) -> int:
        group: str = self._args.group
        name: str = self._args.name
        params = self._parse_arg_params(self._args.params)
        async with await self._connect() as session:
            response = await session.send_command(group, name, params)
            print(json.dumps(response.to_jsonable(), indent=2, sort_keys=True))
        return 0

    async def cmd_listen(self) -> int:
        def event_handler(event: HeosEvent) -> None:
            print(json.dumps(event.to_jsonable(), sort_keys=True))
            sys.stdout.flush()

        async with await self._connect() as session:
            session.add_event_handler(event_handler)
            loop = asyncio.get_running_loop()
            close_tasks: List[asyncio.Task[None]] = []

            def on_signal() -> None:
                logging.debug("Detected SIGINT/SIGTERM, closing session")
                close_tasks.append(asyncio.create_task(session.close()))

            for signal in (SIGINT, SIGTERM):
                loop.add_signal_handler(signal, on_signal)
            try:
                await session.wait_closed()
            finally:
                for signal in (SIGINT, SIGTERM):
                    loop.remove_signal_handler(signal)
                for task in close_tasks:
                    await task
        return 0

    async def cmd_interfaces(self) -> int:
        for ip, ifname in get_local_ip_addresses_and_interfaces(include_loopback=self._args.include_loopback):
            print(f"{ip}\t{ifname}")
        return 0

    async def cmd_version(self) -> int:
        print(pkg_version)
        return 0

    async def arun(self) -> int:
        """Run the heos-connect command-line tool with provided arguments

        Args:
            argv (Optional[Sequence[str]], optional):
                A list of commandline arguments (NOT including the program as argv[0]!),
                or None to use sys.argv[1:]. Defaults to None.

        Returns:
            int: The exit code that would be returned if this were run as a standalone command.
        """
        parser = NoExitArgumentParser(prog="heos-connect", description="Discover and control HEOS devices.")

        default_host = os.getenv("HEOS_HOST")
        if default_host == '':
            default_host = None
        default_port = int(os.getenv("HEOS_PORT", str(HEOS_PORT)))

        # ======================= Main command

        self._parser = parser
        parser.add_argument('--traceback', "--tb", action='store_true', default=False,
                            help='Display detailed exception information')
        parser.add_argument('--log-level', dest='log_level', default='warning',
                            choices=['debug', 'info', 'warning', 'error', 'critical'],
                            help='''The logging level to use. Default: warning''')
        parser.set_defaults(func=self.cmd_bare)

        subparsers = parser.add_subparsers(
                            title='Commands',
                            description='Valid commands',
                            help='Additional help available with "<command-name> -h"')

        discovery_parser = NoExitArgumentParser(add_help=False)
        discovery_parser.add_argument('--timeout-ms', dest='timeout_ms', type=float, default=DEFAULT_DISCOVERY_TIMEOUT_MS,
                            help=f'''The amount of time to wait for discovery replies, in milliseconds. Default: {DEFAULT_DISCOVERY_TIMEOUT_MS}''')
        discovery_parser.add_argument('-i', '--interface', default=None,
                            help='''The local IPv4 address of the interface to send discovery multicasts from. Default: chosen by the OS''')

        connect_parser = NoExitArgumentParser(add_help=False)
        connect_parser.add_argument('-H', '--host', default=default_host,
                            help='''The HEOS device hostname or IP address. Default: env var HEOS_HOST, or the first device discovered''')
        connect_parser.add_argument('-p', '--port', type=int, default=default_port,
                            help=f'''The HEOS device TCP port. Default: env var HEOS_PORT, or {HEOS_PORT}''')
        connect_parser.add_argument('--connect-timeout', dest='connect_timeout', type=float, default=10.0,
                            help='''Timeout for establishing each connection, in seconds. Default: 10.0''')

        # ======================= discover

        parser_discover = subparsers.add_parser('discover', parents=[discovery_parser],
                            description="Discover HEOS devices on the local network")
        parser_discover.add_argument('--max-devices', dest='max_devices', type=int, default=0,
                            help='The maximum number of devices to discover. Default: 0 (no limit)')
        parser_discover.set_defaults(func=self.cmd_discover)

        # ======================= command

        parser_command = subparsers.add_parser('command', parents=[discovery_parser, connect_parser],
                            description="Send a command to a HEOS device and print the response")
        parser_command.add_argument('group', help='The command group; e.g., "player"')
        parser_command.add_argument('name', help='The command name; e.g., "get_players"')
        parser_command.add_argument('params', nargs='*', default=[],
                            help='''<name>=<value> command parameters''')
        parser_command.set_defaults(func=self.cmd_command)

        # ======================= listen

        parser_listen = subparsers.add_parser('listen', parents=[discovery_parser, connect_parser],
                            description="Print events pushed by a HEOS device until interrupted")
        parser_listen.set_defaults(func=self.cmd_listen)

        # ======================= interfaces

        parser_interfaces = subparsers.add_parser('interfaces',
                            description="List local IPv4 addresses that discovery can be sent from")
        parser_interfaces.add_argument('--include-loopback', dest='include_loopback', action='store_true', default=False,
                            help='Include loopback addresses. Default: False')
        parser_interfaces.set_defaults(func=self.cmd_interfaces)

        # ======================= version

        parser_version = subparsers.add_parser('version',
                                description='''Display version information.''')
        parser_version.set_defaults(func=self.cmd_version)

        # =========================================================

        try:
            args = parser.parse_args(self._argv)
        except ArgparseExitError as ex:
            return ex.exit_code
        traceback: bool = args.traceback
        self._provide_traceback = traceback

        try:
            logging.basicConfig(
                level=logging.getLevelName(args.log_level.upper()),
            )
            self._args = args
            func: Callable[[], Awaitable[int]] = args.func
            logging.debug(f"Running command {func.__name__}, tb = {traceback}")
            rc = await func()
            logging.debug(f"Command {func.__name__} returned {rc}")
        except Exception as ex:
            if isinstance(ex, CmdExitError):
                rc = ex.exit_code
            else:
                rc = 1
            if rc != 0:
                if traceback:
                    raise
            print(f"heos-connect: error: {ex}", file=sys.stderr)
        except BaseException as ex:
            print(f"heos-connect: Unhandled exception: {ex}", file=sys.stderr)
            raise

        return rc

    def run(self) -> int:
        loop = asyncio.new_event_loop()
        try:
            asyncio.set_event_loop(loop)
            rc = loop.run_until_complete(self.arun())
        finally:
            loop.close()
        return rc

def run(argv: Optional[Sequence[str]]=None) -> int:
    try:
        rc = CommandHandler(argv).run()
    except CmdExitError as ex:
        rc = ex.exit_code
    return rc

async def arun(argv: Optional[Sequence[str]]=None) -> int:
    try:
        rc = await CommandHandler(argv).arun()
    except CmdExitError as ex:
        rc = ex.exit_code
    return rc

def main() -> None:
    sys.exit(run())

# allow running with "python3 -m", or as a standalone script
if __name__ == "__main__":
    main()
