import json
import os
import sys
from pathlib import Path

from uvicorn import Config, Server


def get_application_path():
    """Directory the app runs from (next to the executable when frozen)."""
    if getattr(sys, 'frozen', False):
        return Path(sys.executable).parent
    else:
        return Path(__file__).parent


application_path = get_application_path()
os.chdir(application_path)
sys.path.insert(0, str(application_path))

config_file = application_path / 'config.json'
if not config_file.exists():
    print(f"⚠️  config.json not found in {application_path}")
    default_config = {
        "allowed_domain_suffix": ".ae",
        "probe_timeout": 8.0,
        "get_timeout": 15.0,
        "max_batch_size": 10,
        "max_retries": 1,
        "probe_concurrency": 3,
        "assume_live_on_failure_for_allowed_domain": True,
        "providers_order": ["perplexity", "lmstudio"],
        "perplexity_model": "sonar-pro",
        "lm_enabled": False,
        "llm_mock": False,
        "cors_origins": ["*"],
        "rate_limit": 100,
        "rate_window_seconds": 3600,
    }
    with open(config_file, 'w', encoding='utf-8') as f:
        json.dump(default_config, f, indent=2, ensure_ascii=False)
    print("✅ config.json created with default settings (set PERPLEXITY_API_KEY in the environment)")


def main(host: str = "0.0.0.0", port: int = 8000):
    """Start the FastAPI server."""
    print(f"🚀 Starting Catalog Assistant from: {application_path}")
    print(f"📁 Working directory: {os.getcwd()}")

    try:
        import backend
        print(f"✅ backend imported ({backend.CODE_VERSION})")
    except Exception as e:
        print(f"❌ Failed to import backend: {e}")
        import traceback
        traceback.print_exc()
        sys.exit(1)

    config = Config(
        "backend:app",
        host=host,
        port=port,
        log_level="info",
        workers=1,
    )

    server = Server(config=config)
    server.run()


if __name__ == "__main__":
    main()
