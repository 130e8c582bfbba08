from dataclasses import dataclass
import os
from dotenv import load_dotenv

@dataclass(frozen=True)
class Config:
    listen_host: str
    listen_port: int
    accept_source_ips: str
    deny_source_ips: str
    deny_url_paths: str
    log_path: str
    upstream_timeout: float

def load_config():
    load_dotenv(override=True)
    return Config(
        listen_host=os.getenv("GATEWAY_LISTEN_HOST", "0.0.0.0"),
        listen_port=int(os.getenv("GATEWAY_LISTEN_PORT", os.getenv("PORT", 8080))),
        accept_source_ips=os.getenv("ACCEPT_SOURCE_IPS", ""),
        deny_source_ips=os.getenv("DENY_SOURCE_IPS", ""),
        deny_url_paths=os.getenv("DENY_URL_PATHS", ""),
        log_path=os.getenv("GATEWAY_LOG_PATH", "gateway.log"),
        upstream_timeout=float(os.getenv("GATEWAY_UPSTREAM_TIMEOUT", 30)),
    )
