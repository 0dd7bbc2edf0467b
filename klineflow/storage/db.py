import logging
import os
from typing import Optional

import psycopg2
import yaml

log = logging.getLogger(__name__)

CONFIG_ENV = "KLINEFLOW_CONFIG"


def _find_cfg_path() -> str:
    # $KLINEFLOW_CONFIG first, then klineflow/config/local.yaml, then ./config/local.yaml
    env_path = os.environ.get(CONFIG_ENV)
    if env_path:
        if not os.path.exists(env_path):
            raise FileNotFoundError(f"{CONFIG_ENV}={env_path} does not exist")
        return env_path
    here = os.path.dirname(__file__)
    pkg_dir = os.path.abspath(os.path.join(here, ".."))
    cand = os.path.join(pkg_dir, "config", "local.yaml")
    if os.path.exists(cand):
        return cand
    proj = os.path.abspath(os.path.join(pkg_dir, ".."))
    cand2 = os.path.join(proj, "config", "local.yaml")
    if os.path.exists(cand2):
        return cand2
    raise FileNotFoundError(f"local.yaml not found. tried: ${CONFIG_ENV}, {cand} , {cand2}")


def load_config(path: Optional[str] = None) -> dict:
    """Load full config yaml (database + subscriptions + pipeline sections)."""
    cfg_path = path or _find_cfg_path()
    with open(cfg_path, "r", encoding="utf-8") as f:
        cfg = yaml.safe_load(f) or {}
    if not isinstance(cfg, dict):
        raise TypeError(f"{cfg_path} must be a mapping/dict, got {type(cfg)}")
    log.debug("[config] loaded %s", cfg_path)
    return cfg


def get_db_cfg(cfg: dict) -> dict:
    """Extract db config; supports either cfg['database'] or cfg['db'] or already-db-dict."""
    if not isinstance(cfg, dict):
        raise TypeError(f"cfg must be dict, got {type(cfg)}")

    if set(("host", "port", "user", "password", "database")).issubset(set(cfg.keys())):
        return cfg

    if "database" in cfg and isinstance(cfg["database"], dict):
        return cfg["database"]
    if "db" in cfg and isinstance(cfg["db"], dict):
        return cfg["db"]

    raise KeyError(f"config missing 'database' or 'db'. keys={list(cfg.keys())}")


def make_conn(cfg: dict):
    db = get_db_cfg(cfg)
    return psycopg2.connect(
        host=db.get("host", "127.0.0.1"),
        port=int(db.get("port", 5432)),
        user=db.get("user", "postgres"),
        password=db.get("password", "postgres"),
        dbname=db.get("database", "quant"),
        application_name=db.get("application_name", "klineflow"),
        connect_timeout=int(db.get("connect_timeout", 10)),
    )


def migrate(cfg: Optional[dict] = None):
    cfg = cfg if cfg is not None else load_config()
    conn = make_conn(cfg)
    try:
        here = os.path.dirname(__file__)
        schema_path = os.path.join(here, "schema.sql")
        with open(schema_path, "r", encoding="utf-8") as f:
            sql = f.read()
        with conn.cursor() as cur:
            cur.execute(sql)
        conn.commit()
    finally:
        conn.close()
    log.info("[migrate] applied %s", schema_path)
