import os, subprocess, secrets, time
from datetime import datetime, timezone

def utc_now() -> datetime:
    return datetime.now(timezone.utc)

def utc_now_iso() -> str:
    return utc_now().isoformat()

def read_secret(path: str) -> str:
    with open(path, "r", encoding="utf-8") as f:
        return f.read().strip()

def read_secret_or_empty(path: str) -> str:
    if not path or not os.path.exists(path):
        return ""
    return read_secret(path)

def new_deployment_id() -> str:
    # epoch-ms prefix keeps ids time-ordered, random suffix avoids collisions
    return f"deploy-{int(time.time() * 1000)}-{secrets.token_hex(5)}"

def run_cmd(args, cwd=None, env=None, timeout=900, redact=None) -> str:
    """
    Run command safely (no shell), capture output.
    redact: list[str] to redact from output.
    """
    env2 = os.environ.copy()
    if env:
        env2.update(env)
    env2["GIT_TERMINAL_PROMPT"] = "0"
    p = subprocess.run(
        args,
        cwd=cwd,
        env=env2,
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        timeout=timeout,
        text=True,
        check=False,
    )
    out = p.stdout or ""
    if redact:
        for r in redact:
            if r:
                out = out.replace(r, "***REDACTED***")
    if p.returncode != 0:
        raise RuntimeError(f"Command failed ({p.returncode}): {args}\n{out}")
    return out

def chunked(items, size: int):
    size = max(1, int(size))
    return [items[i:i + size] for i in range(0, len(items), size)]
