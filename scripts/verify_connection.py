#!/usr/bin/env python3
"""
Connection Verification Script

This script verifies that the sync service can reach everything it depends
on: the Perfana MongoDB database, Grafana's PostgreSQL or MySQL database
(when configured) and the HTTP API of every Grafana instance registered in the
``grafanas`` collection.

Usage:
    python scripts/verify_connection.py

Expected output:
    - Connection successful: one ✅ line per dependency
    - Connection failed: error details for troubleshooting

Environment:
    Uses the same environment variables as the service (MONGO_URL, PG_*).
"""

import asyncio
import logging
import sys
from pathlib import Path

# Add src to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

try:
    from src.adapters.grafana import GrafanaClient
    from src.adapters.grafana_db import grafana_database_from_settings
    from src.adapters.mongo import MongoDocumentStore
    from src.autoconfig.finders import MetadataFinders
    from src.config.models import SyncSettings
except ImportError as e:
    print(f"❌ Critical Import Error: {e}")
    print("   Ensure you are running from project root; dependencies installed.")
    sys.exit(1)

logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


async def verify_grafana_database(settings: SyncSettings) -> bool:
    """Verify the Grafana database answers a lifecycle query."""
    logger.info("-" * 50)
    if not settings.grafana_database_configured:
        logger.warning("⚠️ Grafana database not configured.")
        logger.info("   Set MYSQL_HOST/MYSQL_USER/MYSQL_PASSWORD or PG_HOST/PG_USER/PG_PASSWORD.")
        logger.info("   Mirror sync will be skipped; auto-config still runs.")
        return True

    database = grafana_database_from_settings(settings)
    logger.info(f"🔌 Verifying Grafana database: {type(database).__name__}")
    try:
        await database.connect()
        uids = await database.live_dashboard_uids()
        logger.info("✅ Grafana database reachable")
        logger.info(f"   Dashboards: {len(uids)}")
        return True
    except Exception as e:
        logger.error("❌ Failed to query the Grafana database")
        logger.error(f"   Error: {e}")
        logger.info("")
        logger.info("💡 Troubleshooting:")
        logger.info("   1. Check MYSQL_HOST, MYSQL_PORT and MYSQL_DATABASE")
        logger.info("      or PG_HOST, PG_PORT, PG_DATABASE and PG_SCHEMA")
        logger.info("   2. Check the user can SELECT from dashboard and dashboard_tag")
        return False
    finally:
        await database.close()


async def verify_grafana_instances(finders: MetadataFinders, settings: SyncSettings) -> bool:
    """Verify every registered Grafana instance answers /api/health."""
    instances = await finders.find_grafana_instances()
    if not instances:
        logger.warning("⚠️ No Grafana instances registered in 'grafanas'.")
        logger.info("   Seed them with: python -m src.server.cli --config grafanas.json --once")
        return True

    results = []
    for instance in instances:
        logger.info("-" * 50)
        logger.info(f"🔌 Verifying Grafana instance: {instance.label}")
        try:
            client = GrafanaClient(instance, timeout=settings.grafana_timeout_seconds)
        except Exception as e:
            logger.error(f"❌ Invalid instance configuration: {e}")
            results.append(False)
            continue
        try:
            health = await client.health()
            logger.info("✅ Grafana API reachable")
            logger.info(f"   Target: {client.base_url}")
            logger.info(f"   Version: {(health or {}).get('version', 'unknown')}")
            results.append(True)
        except Exception as e:
            logger.error(f"❌ Failed to reach Grafana instance '{instance.label}'")
            logger.error(f"   Error: {e}")
            logger.info("")
            logger.info("💡 Troubleshooting:")
            logger.info("   1. Verify serverUrl/clientUrl of the instance")
            logger.info("   2. Verify the apiKey has Editor rights")
            results.append(False)
        finally:
            await client.aclose()
    return all(results)


async def verify_connection() -> bool:
    """
    Verify connections to all dependencies of the sync service.
    """
    settings = SyncSettings()

    logger.info("🔍 Connecting to MongoDB...")
    store = MongoDocumentStore(settings.mongo_url, settings.mongo_database)
    try:
        await store.ping()
        logger.info(f"✅ MongoDB reachable (database: {store.database_name})")
    except Exception as e:
        logger.error("❌ Failed to reach MongoDB")
        logger.error(f"   Error: {e}")
        logger.info("")
        logger.info("💡 Troubleshooting:")
        logger.info("   1. Check MONGO_URL (and MONGO_DATABASE)")
        await store.close()
        return False

    try:
        results = [
            await verify_grafana_database(settings),
            await verify_grafana_instances(MetadataFinders(store), settings),
        ]
    finally:
        await store.close()

    all_success = all(results)
    logger.info("-" * 50)
    if all_success:
        logger.info("🎉 All connections are working correctly!")
    else:
        logger.error("❌ Some connections failed verification. See logs above.")
    return all_success


def main():
    """Main entry point."""
    print("=" * 70)
    print("Perfana Grafana Sync - Connection Verification")
    print("=" * 70)
    print()

    success = asyncio.run(verify_connection())

    print()
    print("=" * 70)

    sys.exit(0 if success else 1)


if __name__ == "__main__":
    main()
