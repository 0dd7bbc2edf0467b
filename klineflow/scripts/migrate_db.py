# klineflow/scripts/migrate_db.py
import argparse

from klineflow.common.logs import setup_logging
from klineflow.storage.db import load_config, migrate


def main():
    ap = argparse.ArgumentParser()
    ap.add_argument("--config", default=None, help="path to local.yaml")
    args = ap.parse_args()

    setup_logging("info")
    migrate(load_config(args.config))
    print("DB migrate OK")


if __name__ == "__main__":
    main()
