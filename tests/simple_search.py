#!/usr/bin/env python3

import logging
import asyncio
import heos_connect as heos

#logging.basicConfig(level=logging.DEBUG)

async def amain():
    # all parameters to HeosDiscovery are optional; they allow you to set the multicast group, the
    # interface to send from, etc.
    discovery = heos.HeosDiscovery()
    # discover() sends one search multicast and collects replies until the timeout expires or
    # max_devices replies have arrived. on_discover is called as each device answers.
    devices = await discovery.discover(timeout_ms=3000, on_discover=lambda device: print(f"Found {device}"))
    async with await heos.connect(devices[0]) as session:
        response = await session.send_command("player", "get_players")
        print(response.payload)

loop = asyncio.new_event_loop()
try:
    asyncio.set_event_loop(loop)
    loop.run_until_complete(amain())
finally:
    loop.close()
