#!/usr/bin/env python3
"""
Smoke test for gatekeeper deployments.

Walks one client through the gate the way a real one would:
1. Health check
2. Group parameters
3. Unlock flow (challenge, solve the VDF, permit)
4. Replayed proof is refused
5. Tampered proof is refused

Solving uses the package's own VDF code, so run it from an environment where
gatekeeper is installed (``pip install -e .``). Keep the server's difficulty
modest, since the solve is as slow as for any honest client.

Usage:
    ./scripts/smoke-test.py https://staging.example.com
    ./scripts/smoke-test.py https://staging.example.com --health-only
"""

import argparse
import base64
import json
import random
import sys
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from gatekeeper.services import vdf

DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_RETRIES = 2
DEFAULT_RETRY_BACKOFF_SECONDS = 0.5
MAX_BACKOFF_SECONDS = 4.0
MAX_ERROR_BODY_CHARS = 2_000
SESSION_KEY_HEADER = "X-Session-Key"


class ApiError(RuntimeError):
    def __init__(self, status_code: int, body: str):
        super().__init__(f"API error {status_code}: {body}")
        self.status_code = status_code
        self.body = body


def log(msg: str) -> None:
    """Print timestamped log message."""
    print(f"[{datetime.now().strftime('%H:%M:%S')}] {msg}", flush=True)


def _is_retryable_status(status_code: int) -> bool:
    return status_code in {408, 425, 429, 502, 503, 504}


@dataclass
class HttpClient:
    base_url: str
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS
    retries: int = DEFAULT_RETRIES
    retry_backoff_seconds: float = DEFAULT_RETRY_BACKOFF_SECONDS

    def request(
        self,
        method: str,
        url: str,
        *,
        headers: dict[str, str] | None = None,
        body: bytes | None = None,
    ) -> tuple[int, dict[str, str], bytes]:
        max_attempts = max(1, self.retries + 1)
        for attempt in range(1, max_attempts + 1):
            try:
                request = Request(url, data=body, headers=headers or {}, method=method)
                try:
                    with urlopen(request, timeout=self.timeout_seconds) as response:
                        return response.getcode(), dict(response.headers.items()), response.read()
                except HTTPError as e:
                    error_body = e.read() if e.fp else b""
                    resp_headers = dict(e.headers.items()) if e.headers else {}
                    if attempt < max_attempts and _is_retryable_status(e.code):
                        self._sleep_backoff(attempt)
                        continue
                    return e.code, resp_headers, error_body
            except (URLError, TimeoutError) as e:
                if attempt < max_attempts:
                    self._sleep_backoff(attempt)
                    continue
                raise RuntimeError(f"Network error after {attempt} attempts: {e}") from e
        raise RuntimeError("Retries exhausted")

    def api_json(
        self,
        method: str,
        path: str,
        *,
        data: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> tuple[dict[str, Any], dict[str, str]]:
        req_headers = {"Content-Type": "application/json"}
        if headers:
            req_headers.update(headers)

        body_bytes = json.dumps(data).encode() if data is not None else None
        status, resp_headers, body = self.request(
            method, f"{self.base_url}/api/v1{path}", headers=req_headers, body=body_bytes
        )
        if status < 200 or status >= 300:
            raise ApiError(status, body.decode("utf-8", errors="replace")[:MAX_ERROR_BODY_CHARS])
        return json.loads(body.decode()), resp_headers

    def _sleep_backoff(self, attempt: int) -> None:
        base = self.retry_backoff_seconds * (2 ** (attempt - 1))
        jitter = random.random() * self.retry_backoff_seconds
        time.sleep(min(MAX_BACKOFF_SECONDS, base + jitter))


@dataclass
class SmokeContext:
    client: HttpClient
    max_health_attempts: int

    params: vdf.GroupParameters | None = None
    session_key: str | None = None
    proof_message: dict[str, Any] | None = None

    def require_params(self) -> vdf.GroupParameters:
        if self.params is None:
            raise RuntimeError("Missing group parameters (step ordering bug)")
        return self.params

    def require_proof(self) -> tuple[str, dict[str, Any]]:
        if not self.session_key or self.proof_message is None:
            raise RuntimeError("Missing solved proof (step ordering bug)")
        return self.session_key, self.proof_message


@dataclass(frozen=True)
class Step:
    name: str
    run: Callable[[SmokeContext], None]


def run_steps(ctx: SmokeContext, steps: list[Step]) -> bool:
    overall_start = time.time()
    for step in steps:
        log(f"STEP: {step.name}")
        start = time.time()
        try:
            step.run(ctx)
        except Exception as e:
            log(f"FAILED: {step.name}: {e}")
            log(f"Total: {time.time() - overall_start:.2f}s")
            return False
        log(f"OK: {step.name} ({time.time() - start:.2f}s)")

    log(f"Total: {time.time() - overall_start:.2f}s")
    return True


def wait_for_health(client: HttpClient, max_attempts: int = 30, delay: float = 2.0) -> bool:
    """Wait for /health to return healthy status."""
    url = f"{client.base_url}/health"

    for attempt in range(1, max_attempts + 1):
        try:
            status, _, body = client.request("GET", url)
            if status == 200 and json.loads(body.decode()).get("status") == "healthy":
                log(f"Health check passed (attempt {attempt})")
                return True
        except (json.JSONDecodeError, RuntimeError):
            pass

        if attempt < max_attempts:
            time.sleep(delay)

    return False


def expect_permit(reply: dict[str, Any], allowed: bool) -> None:
    if reply != {"permit_reply": {"connection_allowed": allowed}}:
        raise RuntimeError(f"Expected connection_allowed={allowed}, got {reply!r}")


def step_health(ctx: SmokeContext) -> None:
    log(f"Checking health: {ctx.client.base_url}/health")
    if not wait_for_health(ctx.client, max_attempts=ctx.max_health_attempts):
        raise RuntimeError("Health check failed")


def step_parameters(ctx: SmokeContext) -> None:
    data, _ = ctx.client.api_json("GET", "/parameters")
    ctx.params = vdf.GroupParameters.from_hex(data["modulus"], data["security_bits"])
    log(
        f"Group: {ctx.params.modulus.bit_length()}-bit modulus, "
        f"difficulty {data['current_difficulty']} "
        f"(range {data['base_difficulty']}..{data['max_difficulty']})"
    )


def step_unlock(ctx: SmokeContext) -> None:
    params = ctx.require_params()
    reply, headers = ctx.client.api_json("POST", "/gate/unlock", data={"unlock_request": {}})
    challenge = reply.get("challenge_reply")
    if challenge is None:
        raise RuntimeError(f"Expected challenge_reply, got {reply!r}")

    session_key = headers.get(SESSION_KEY_HEADER) or headers.get(SESSION_KEY_HEADER.lower())
    if not session_key:
        raise RuntimeError("Server did not return a session key")

    seed = base64.b64decode(challenge["challenge"])
    difficulty = challenge["difficulty"]
    log(f"Solving VDF (difficulty={difficulty})")
    start = time.time()
    proof = vdf.prove(params, seed, difficulty)
    log(f"Solved in {time.time() - start:.2f}s")
    if not vdf.is_valid_proof(params, seed, difficulty, proof):
        raise RuntimeError("Solved proof does not verify locally (group mismatch?)")

    message = {
        "unlock_request": {
            "proof": {
                "challenge": challenge["challenge"],
                "difficulty": difficulty,
                "vdf_proof": base64.b64encode(proof).decode(),
            }
        }
    }
    reply, _ = ctx.client.api_json(
        "POST", "/gate/unlock", data=message, headers={SESSION_KEY_HEADER: session_key}
    )
    expect_permit(reply, True)
    ctx.session_key = session_key
    ctx.proof_message = message


def step_replay(ctx: SmokeContext) -> None:
    session_key, message = ctx.require_proof()
    reply, _ = ctx.client.api_json(
        "POST", "/gate/unlock", data=message, headers={SESSION_KEY_HEADER: session_key}
    )
    expect_permit(reply, False)


def step_tampered(ctx: SmokeContext) -> None:
    reply, headers = ctx.client.api_json("POST", "/gate/unlock", data={"unlock_request": {}})
    challenge = reply["challenge_reply"]
    session_key = headers.get(SESSION_KEY_HEADER) or headers.get(SESSION_KEY_HEADER.lower())
    width = ctx.require_params().element_size
    bogus = b"\x00" * (width * (1 + vdf.proof_length(challenge["difficulty"])))
    seed = base64.b64decode(challenge["challenge"])
    if vdf.is_valid_proof(ctx.require_params(), seed, challenge["difficulty"], bogus):
        raise RuntimeError("Bogus proof unexpectedly verifies locally")

    message = {
        "unlock_request": {
            "proof": {
                "challenge": challenge["challenge"],
                "difficulty": challenge["difficulty"],
                "vdf_proof": base64.b64encode(bogus).decode(),
            }
        }
    }
    reply, _ = ctx.client.api_json(
        "POST", "/gate/unlock", data=message, headers={SESSION_KEY_HEADER: session_key}
    )
    expect_permit(reply, False)


def main() -> int:
    parser = argparse.ArgumentParser(description="Gatekeeper smoke test")
    parser.add_argument("base_url", help="Base URL (e.g., https://staging.example.com)")
    parser.add_argument(
        "--health-only",
        action="store_true",
        help="Only run health check, skip the unlock flow",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=DEFAULT_TIMEOUT_SECONDS,
        help=f"HTTP timeout seconds (default: {DEFAULT_TIMEOUT_SECONDS:g})",
    )
    parser.add_argument(
        "--retries",
        type=int,
        default=DEFAULT_RETRIES,
        help=f"Retries for transient failures (default: {DEFAULT_RETRIES})",
    )
    parser.add_argument(
        "--max-health-attempts",
        type=int,
        default=30,
        help="Max health check attempts (default: 30)",
    )
    args = parser.parse_args()

    try:
        client = HttpClient(
            base_url=args.base_url.rstrip("/"), timeout_seconds=args.timeout, retries=args.retries
        )
        ctx = SmokeContext(client=client, max_health_attempts=args.max_health_attempts)

        steps = [Step("health", step_health)]
        if args.health_only:
            log("Health-only mode: skipping unlock flow")
        else:
            steps.extend(
                [
                    Step("parameters", step_parameters),
                    Step("unlock", step_unlock),
                    Step("replay refused", step_replay),
                    Step("tampered proof refused", step_tampered),
                ]
            )
        return 0 if run_steps(ctx, steps) else 1
    except Exception as e:
        log(f"ERROR: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
