#!/usr/bin/env python3

"""CLI tool to list serial ports, run the web bridge, or watch a port"""

import argparse
import asyncio
import logging
import msgspec
import ok_logging_setup
import serial_bridge
import uvicorn

from serial_bridge import web

ok_logging_setup.skip_traceback_for(serial_bridge.BridgeConfigInvalid)
ok_logging_setup.skip_traceback_for(serial_bridge.SerialBridgeException)


def main():
    parser = argparse.ArgumentParser(description="Serial port to web bridge.")
    subparsers = parser.add_subparsers(title="actions", dest="command")
    list_parser = subparsers.add_parser("list", help="List known serial ports")
    list_style_group = list_parser.add_mutually_exclusive_group()
    list_style_group.add_argument(
        "--name", "-n", action="store_true", help="print device path only"
    )
    list_style_group.add_argument(
        "--verbose", "-v", action="store_true", help="print detailed properties"
    )

    serve_parser = subparsers.add_parser("serve", help="Run the HTTP bridge")
    serve_parser.add_argument("--serial", "-s", help="device path ($SERIAL_PORT)")
    serve_parser.add_argument("--baud", "-b", type=int, help="($SERIAL_BAUD)")
    serve_parser.add_argument("--host", help="listen address ($HOST)")
    serve_parser.add_argument("--port", "-p", type=int, help="HTTP port ($PORT)")
    serve_parser.add_argument("--static", help="frontend directory ($STATIC_DIR)")
    serve_parser.add_argument(
        "--no-autodetect",
        dest="autodetect",
        action="store_const",
        const=False,
        help="don't pick a device when none is configured",
    )

    monitor_parser = subparsers.add_parser("monitor", help="Print port lines")
    monitor_parser.add_argument("serial", nargs="?", help="device path")
    monitor_parser.add_argument("--baud", "-b", type=int, help="($SERIAL_BAUD)")

    args = parser.parse_args()
    if not args.command:
        args = parser.parse_args(["list"])

    level = "warning" if args.command == "list" and args.name else "info"
    ok_logging_setup.install({"OK_LOGGING_LEVEL": level})

    if args.command == "list":
        found = serial_bridge.list_ports()
        if not found:
            ok_logging_setup.exit("❌ No serial ports found")

        num, candidate = len(found), serial_bridge.select_candidate(found)
        logging.info("🔌 %d serial port%s found", num, "" if num == 1 else "s")
        for desc in found:
            if args.name:
                print(desc.path)
            elif args.verbose:
                print(format_detail(desc, candidate), end="\n\n")
            else:
                print(format_line(desc, candidate))

    elif args.command == "serve":
        config = serial_bridge.BridgeConfig.from_env(
            port=args.serial,
            baud=args.baud,
            host=args.host,
            http_port=args.port,
            static_dir=args.static,
            autodetect=args.autodetect,
        )
        logging.info("🌉 Serving on %s:%d", config.host, config.http_port)
        app = web.create_app(config)
        uvicorn.run(app, host=config.host, port=config.http_port, log_config=None)

    elif args.command == "monitor":
        config = serial_bridge.BridgeConfig.from_env(
            port=args.serial, baud=args.baud
        )
        try:
            asyncio.run(monitor(config))
        except KeyboardInterrupt:
            pass


async def monitor(config: serial_bridge.BridgeConfig) -> None:
    """Prints received lines until the port closes"""

    async with serial_bridge.SessionManager(config) as manager:
        closed = asyncio.Event()
        manager.subscribe("data", lambda ev: print(ev.line, flush=True))
        manager.subscribe("error", lambda ev: logging.warning("⚠️ %s", ev.message))
        if not await manager.start():
            ok_logging_setup.exit("❌ No serial port opened")

        status = manager.status()
        logging.info("🔌 %s open (baud=%d)", status.path, status.baud)
        manager.subscribe("close", lambda ev: closed.set())
        await closed.wait()
        logging.info("🔌 %s closed", status.path)


def format_line(
    desc: serial_bridge.DeviceDescriptor,
    candidate: serial_bridge.DeviceDescriptor | None,
) -> str:
    words = [f"{desc.path}✅" if desc == candidate else desc.path]
    if desc.vendor_id and desc.product_id:
        words.append(f"{desc.vendor_id}:{desc.product_id}")
    words.extend(w for w in (desc.serial_number, desc.description) if w)
    return " ".join(words)


def format_detail(
    desc: serial_bridge.DeviceDescriptor,
    candidate: serial_bridge.DeviceDescriptor | None,
) -> str:
    label = f"Port: {desc.path}"
    if desc == candidate:
        label += " (auto-detect choice)"
    return label + "".join(
        f"\n  {k}={v!r}"
        for k, v in msgspec.to_builtins(desc).items()
        if v is not None and k != "path"
    )


if __name__ == "__main__":
    main()
