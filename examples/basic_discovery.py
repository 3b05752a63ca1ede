#!/usr/bin/env python3
"""
VU Dials Basic Discovery Example

Connects to the hub, provisions and identifies all dials, then prints what
was found and watches hub events for a while.

Expected behavior:
- Auto-detects the hub (or uses --port)
- Lists every dial by UID with its runtime index and firmware details
- Prints connectivity / dial events until --duration expires
"""

import argparse
import logging
import os
import sys

import anyio

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from vudials import HubConfig, HubController, find_hub_ports

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
logger = logging.getLogger(__name__)


async def async_main(args):
    config = HubConfig(reconcile_interval=args.reconcile)

    async with HubController(config) as hub:
        hub.subscribe(lambda event: print(f"📨 {event.kind.value}: {event.uid or ''} {event.detail}"))

        result = await hub.connect(args.port)
        if not result:
            print(f"❌ Could not connect: {result.detail}")
            print("💡 Try: python examples/basic_discovery.py --port <PORT>")
            return 1
        print(f"✅ Connected on {result.detail}")

        result = await hub.discover()
        if not result:
            print(f"❌ Discovery failed: {result.detail}")
            return 1

        dials = hub.dials()
        print(f"\n🔍 Found {len(dials)} dial(s)")
        print("=" * 60)
        for dial in sorted(dials.values(), key=lambda d: d.index):
            print(f"  [{dial.index:2d}] {dial.uid}  {dial.name}")
            print(f"       fw {dial.firmware_version}  hw {dial.hardware_version}  "
                  f"proto {dial.protocol_version}  build {dial.build_hash}")
            print(f"       {dial.easing}")

        stats = hub.transport.get_stats()
        print(f"\n📊 Transport: {stats['frames_sent']} sent, {stats['timeouts']} timeouts, "
              f"{stats['parse_errors']} parse errors")

        print(f"\n📡 Watching events for {args.duration} seconds...")
        await anyio.sleep(args.duration)
    return 0


def main():
    parser = argparse.ArgumentParser(description="VU Dials Discovery")
    parser.add_argument("--port", help="Serial port (auto-detect if not specified)")
    parser.add_argument("--list-ports", action="store_true", help="List candidate hub ports and exit")
    parser.add_argument("--duration", type=float, default=10.0, help="Event watch duration (seconds)")
    parser.add_argument("--reconcile", type=float, default=None,
                        help="Verify dial identities every N seconds")
    args = parser.parse_args()

    if args.list_ports:
        ports = find_hub_ports()
        print("\n".join(ports) if ports else "No hub ports found")
        return 0

    try:
        return anyio.run(async_main, args)
    except KeyboardInterrupt:
        print("\n⏹️  Stopped by user (Ctrl-C)")
        return 0


if __name__ == "__main__":
    sys.exit(main())
