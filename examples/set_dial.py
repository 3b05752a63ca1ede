#!/usr/bin/env python3
"""
VU Dials Control Example

Sets value, backlight, easing and/or the e-paper image of one dial.

Usage:
    python examples/set_dial.py --uid 3A0041000650564139323920 --value 75 --color red
    python examples/set_dial.py --value 40 --image cpu.png      # first dial found
    python examples/set_dial.py --sweep                          # 0 -> 100 on every dial
"""

import argparse
import logging
import os
import sys

import anyio

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from vudials import EasingConfig, EventKind, HubController, load_image

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
logger = logging.getLogger(__name__)


async def sweep(hub: HubController):
    """Step every dial through its range."""
    for percent in range(0, 101, 10):
        for uid in hub.uids():
            result = await hub.set_value(uid, percent)
            if not result:
                print(f"⚠️  {uid}: {result.code.value} {result.detail}")
        await anyio.sleep(0.5)


async def async_main(args):
    async with HubController() as hub:
        if not await hub.connect(args.port):
            print("❌ No VU hub found")
            return 1
        await hub.discover()
        if not hub.uids():
            print("❌ No dials found")
            return 1

        if args.sweep:
            await sweep(hub)
            return 0

        uid = args.uid or hub.uids()[0]
        print(f"🎛️  Using dial {uid}")

        if args.value is not None:
            print(f"Set value {args.value}%: {(await hub.set_value(uid, args.value)).code.value}")
        if args.color:
            print(f"Set color {args.color}: {(await hub.set_named_color(uid, args.color)).code.value}")
        if args.easing:
            easing = EasingConfig(*args.easing)
            print(f"Set {easing}: {(await hub.set_easing(uid, easing)).code.value}")

        if args.image:
            done = anyio.Event()

            def on_event(event):
                if event.uid == uid and event.kind in (EventKind.IMAGE_SENT, EventKind.IMAGE_FAILED):
                    print(f"🖼️  {event.kind.value} {event.detail}")
                    done.set()

            hub.subscribe(on_event)
            hub.queue_image(uid, load_image(args.image, threshold=args.threshold))
            print("Uploading image (this takes a few seconds)...")
            with anyio.move_on_after(60):
                await done.wait()

        print(f"📊 {hub.dial(uid)}")
    return 0


def main():
    parser = argparse.ArgumentParser(description="VU Dials Control")
    parser.add_argument("--port", help="Serial port (auto-detect if not specified)")
    parser.add_argument("--uid", help="Dial UID (default: first dial found)")
    parser.add_argument("--value", type=int, help="Needle position 0-100")
    parser.add_argument("--color", help="Backlight color name (red, green, blue, ...)")
    parser.add_argument("--easing", type=int, nargs=4, metavar=("DSTEP", "DPERIOD", "BSTEP", "BPERIOD"),
                        help="Dial step, dial period, backlight step, backlight period")
    parser.add_argument("--image", help="PNG/BMP/JPEG to show on the e-paper display")
    parser.add_argument("--threshold", type=int, default=127, help="Ink threshold for --image")
    parser.add_argument("--sweep", action="store_true", help="Sweep all dials from 0 to 100")
    args = parser.parse_args()

    try:
        return anyio.run(async_main, args)
    except KeyboardInterrupt:
        print("\n⏹️  Stopped by user (Ctrl-C)")
        return 0


if __name__ == "__main__":
    sys.exit(main())
