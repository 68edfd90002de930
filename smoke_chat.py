import asyncio
import json
import sys

import websockets

# Run against a live server: python smoke_chat.py [ws-url] [room-id]
URL = sys.argv[1] if len(sys.argv) > 1 else "ws://localhost:4000/ws"
ROOM_ID = sys.argv[2] if len(sys.argv) > 2 else "lobby"


async def smoke():
    async with websockets.connect(URL) as ws:
        await ws.send(json.dumps({"type": "identity-init", "userId": "smoke-user", "username": "Smoke"}))
        print(f"Ack: {await ws.recv()}")

        await ws.send(json.dumps({"type": "room-join", "roomId": ROOM_ID}))
        history = json.loads(await ws.recv())
        print(f"History: {len(history['messages'])} message(s)")
        print(f"Presence: {await ws.recv()}")

        await ws.send(json.dumps({"type": "message-send", "roomId": ROOM_ID, "text": "Hello from Python!"}))

        # skip presence chatter from other members until our echo arrives
        while True:
            frame = json.loads(await ws.recv())
            if frame["type"] == "message-new":
                print(f"Received: {frame}")
                break


if __name__ == "__main__":
    asyncio.run(smoke())
