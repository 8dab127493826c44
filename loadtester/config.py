from dataclasses import dataclass
import os


def _target_url(url_var: str, host_var: str, default_host: str) -> str:
    # Full URL wins; otherwise a hostname on the default target port.
    url = os.getenv(url_var)
    if url:
        return url.rstrip("/")
    host = os.getenv(host_var, default_host)
    return f"http://{host}:{os.getenv('TARGET_PORT', '3000')}"


@dataclass(frozen=True)
class Settings:
    # Results storage: primary dir, and where to go when it is not writable
    results_dir: str = os.getenv("RESULTS_DIR", "/results")
    fallback_results_dir: str = os.getenv("FALLBACK_RESULTS_DIR", "/tmp/benchmark-results")
    history_limit: int = int(os.getenv("HISTORY_LIMIT", "50"))

    # Benchmark targets
    # - App Platform: full URLs (BUN_URL=http://bun-service:8080)
    # - Compose: container hostnames on port 3000
    bun_url: str = _target_url("BUN_URL", "BUN_HOST", "bun-app")
    nodejs_url: str = _target_url("NODEJS_URL", "NODEJS_HOST", "nodejs-app")

    # Dashboard server
    host: str = os.getenv("HOST", "0.0.0.0")
    port: int = int(os.getenv("PORT", "8080"))
    log_level: str = os.getenv("LOG_LEVEL", "INFO").upper()

    # Load generation
    hey_bin: str = os.getenv("HEY_BIN", "hey")
    request_timeout_s: float = float(os.getenv("REQUEST_TIMEOUT_S", "30.0"))
    upload_payload_path: str = os.getenv("UPLOAD_PAYLOAD_PATH", "/tmp/upload-payload.bin")

    # Run defaults, applied when a start request leaves a field unset
    default_duration: str = os.getenv("DEFAULT_DURATION", "30s")
    default_concurrency: int = int(os.getenv("DEFAULT_CONCURRENCY", "50"))
    default_iterations: int = int(os.getenv("DEFAULT_ITERATIONS", "10"))
    default_max_concurrency: int = int(os.getenv("DEFAULT_MAX_CONCURRENCY", "2000"))
    default_suite_minutes: int = int(os.getenv("DEFAULT_SUITE_MINUTES", "10"))


settings = Settings()
