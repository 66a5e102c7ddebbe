"""
Stand-in for the native worker binary, used by the session tests.

Speaks the worker's loopback HTTP API: GET /health, POST /generate (event
stream) and POST /upscale. FAKE_WORKER_MODE changes its behaviour:
    ok     answer normally (default)
    crash  exit with code 1 after the first progress event
    exit   exit with code 1 before listening
    hang   never start listening
"""
import argparse
import base64
import io
import json
import os
import sys
import time
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

from PIL import Image

MODE = os.getenv("FAKE_WORKER_MODE", "ok")


def parse_args(argv):
    parser = argparse.ArgumentParser()
    parser.add_argument("--port", type=int, required=True)
    parser.add_argument("--patch")
    parser.add_argument("--cpu", action="store_true")
    parser.add_argument("--upscaler_mode", action="store_true")
    args, _ = parser.parse_known_args(argv)
    return args


class Handler(BaseHTTPRequestHandler):
    def log_message(self, format, *args):
        sys.stdout.write("request: " + (format % args) + "\n")
        sys.stdout.flush()

    def _event(self, payload):
        self.wfile.write(b"data: " + json.dumps(payload).encode("utf-8") + b"\n\n")
        self.wfile.flush()

    def do_GET(self):
        if self.path != "/health":
            self.send_error(404)
            return
        body = b'{"status": "ok"}'
        self.send_response(200)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def do_POST(self):
        length = int(self.headers.get("Content-Length") or 0)
        body = self.rfile.read(length)
        if self.path == "/generate":
            self._generate(json.loads(body))
        elif self.path == "/upscale":
            self._upscale(body)
        else:
            self.send_error(404)

    def _generate(self, request):
        steps = int(request.get("steps", 4))
        width, height = int(request["width"]), int(request["height"])
        self.send_response(200)
        self.send_header("Content-Type", "text/event-stream")
        self.send_header("Connection", "close")
        self.end_headers()
        for step in range(1, steps + 1):
            self._event({"type": "progress", "step": step, "total_steps": steps})
            if MODE == "crash":
                os._exit(1)
        pixels = base64.b64encode(bytes(3 * width * height)).decode("ascii")
        self._event({
            "type": "complete",
            "image": pixels,
            "width": width,
            "height": height,
            "seed": request.get("seed", 12345),
        })
        self.wfile.write(b"data: [DONE]\n\n")

    def _upscale(self, body):
        width = int(self.headers["X-Image-Width"])
        height = int(self.headers["X-Image-Height"])
        source = Image.frombytes("RGB", (width, height), body)
        buf = io.BytesIO()
        source.resize((width * 4, height * 4)).save(buf, format="JPEG")
        out = buf.getvalue()
        self.send_response(200)
        self.send_header("Content-Type", "image/jpeg")
        self.send_header("Content-Length", str(len(out)))
        self.send_header("X-Output-Width", str(width * 4))
        self.send_header("X-Output-Height", str(height * 4))
        self.send_header("X-Duration-Ms", "5")
        self.end_headers()
        self.wfile.write(out)


def main(argv):
    args = parse_args(argv)
    print(f"fake worker starting on {args.port} mode={MODE} patch={args.patch}", flush=True)
    if MODE == "exit":
        print("failed to open unet.bin", flush=True)
        return 1
    if MODE == "hang":
        while True:
            time.sleep(1)
    server = ThreadingHTTPServer(("127.0.0.1", args.port), Handler)
    server.serve_forever()
    return 0


if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
