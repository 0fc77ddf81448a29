"""
Start the Azure OpenAI gateway (azure_gateway.main:app) under uvicorn.

Works from a plain checkout: src/ is added to sys.path, and CONFIG_PATH
falls back to models.json next to this file.

  HOST, PORT          bind address (0.0.0.0:8100)
  LOG_LEVEL           uvicorn log level (info)
  UVICORN_WORKERS     worker processes (1)
  RELOAD              1/true/yes/on; ignored with more than one worker
"""
import os
import sys
import traceback
from pathlib import Path

import uvicorn

HERE = Path(__file__).resolve().parent
SRC_DIR = str(HERE / "src")

if SRC_DIR not in sys.path:
    sys.path.insert(0, SRC_DIR)
os.environ.setdefault("CONFIG_PATH", str(HERE / "models.json"))


def env_flag(name: str) -> bool:
    return (os.getenv(name) or "").strip().lower() in ("1", "true", "yes", "on")


def env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip().isdigit():
        return default
    return int(raw)


def uvicorn_options() -> dict:
    workers = env_int("UVICORN_WORKERS", 1)
    reload_opt = env_flag("RELOAD")
    if reload_opt and workers > 1:
        print("[gateway] RELOAD needs a single worker; starting without reload.")
        reload_opt = False
    return {
        "host": os.getenv("HOST", "0.0.0.0"),
        "port": env_int("PORT", 8100),
        "log_level": os.getenv("LOG_LEVEL", "info").lower(),
        "workers": workers,
        "reload": reload_opt,
    }


def run() -> None:
    opts = uvicorn_options()

    cfg_path = os.environ["CONFIG_PATH"]
    if not os.path.exists(cfg_path) and not os.getenv("AZURE_OPENAI_ENDPOINT"):
        print(f"[gateway] WARNING: {cfg_path} does not exist and AZURE_OPENAI_ENDPOINT is unset; "
              "chat requests fail until a model is configured (POST /api/config writes the file).")

    print(f"[gateway] Listening on {opts['host']}:{opts['port']} "
          f"(workers={opts['workers']}, reload={opts['reload']})")
    try:
        uvicorn.run("azure_gateway.main:app", **opts)
    except Exception:
        print("[gateway] uvicorn failed to start:")
        traceback.print_exc()
        raise


if __name__ == "__main__":
    run()
