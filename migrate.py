#!/usr/bin/env python3
"""
Migraciones del esquema del ledger con Alembic.

    python migrate.py create "mensaje"   # Autogenerar revisión
    python migrate.py upgrade [rev]      # Aplicar hasta head (o rev)
    python migrate.py downgrade [rev]    # Revertir una revisión (o hasta rev)
    python migrate.py history
    python migrate.py current
    python migrate.py check              # Falla si los modelos tienen cambios sin migrar
"""
import argparse
import logging
import sys
from pathlib import Path

root_dir = Path(__file__).parent
sys.path.insert(0, str(root_dir))

from alembic.config import Config
from alembic import command
from app.core.config import settings

logger = logging.getLogger("migrate")


def get_alembic_config() -> Config:
    """alembic.ini del proyecto con la URL de settings."""
    alembic_cfg = Config(str(root_dir / "alembic.ini"))
    alembic_cfg.set_main_option("script_location", str(root_dir / "alembic"))
    alembic_cfg.set_main_option("sqlalchemy.url", settings.database_url)
    return alembic_cfg


def main() -> int:
    parser = argparse.ArgumentParser(description="Migraciones de base de datos")
    subparsers = parser.add_subparsers(dest="action", required=True)

    create = subparsers.add_parser("create", help="Autogenerar una revisión")
    create.add_argument("message")
    upgrade = subparsers.add_parser("upgrade", help="Aplicar migraciones pendientes")
    upgrade.add_argument("revision", nargs="?", default="head")
    downgrade = subparsers.add_parser("downgrade", help="Revertir migraciones")
    downgrade.add_argument("revision", nargs="?", default="-1")
    subparsers.add_parser("history", help="Historial de revisiones")
    subparsers.add_parser("current", help="Revisión aplicada")
    subparsers.add_parser("check", help="Detectar cambios de modelo sin migración")

    args = parser.parse_args()
    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(message)s")
    alembic_cfg = get_alembic_config()

    if args.action == "create":
        command.revision(alembic_cfg, autogenerate=True, message=args.message)
        logger.info(f"Migración creada: {args.message}")
    elif args.action == "upgrade":
        command.upgrade(alembic_cfg, args.revision)
        logger.info(f"Base de datos en {args.revision}")
    elif args.action == "downgrade":
        command.downgrade(alembic_cfg, args.revision)
        logger.info(f"Rollback a {args.revision} ejecutado")
    elif args.action == "history":
        command.history(alembic_cfg)
    elif args.action == "current":
        command.current(alembic_cfg)
    elif args.action == "check":
        command.check(alembic_cfg)
    return 0


if __name__ == "__main__":
    sys.exit(main())
