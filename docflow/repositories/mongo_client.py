"""MongoDB Client - Connection and Collection Management"""
from typing import Any, Dict, Optional
from pymongo import MongoClient as PyMongoClient
from pymongo.database import Database
from pymongo.collection import Collection
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import ConnectionFailure, PyMongoError

from ..config.settings import settings
from ..utils.logger import get_logger

logger = get_logger(__name__)

DEFINITIONS = "workflow_definitions"
INSTANCES = "workflow_instances"
HISTORY = "workflow_history"
APPROVALS = "workflow_approvals"
NOTIFICATION_OUTBOX = "notification_outbox"

# Global client instance
_client: Optional[PyMongoClient] = None
_database: Optional[Database] = None


def get_client() -> PyMongoClient:
    """Get or create MongoDB client"""
    global _client
    if _client is None:
        logger.info(f"Connecting to MongoDB: {settings.mongo_uri}")
        _client = PyMongoClient(
            settings.mongo_uri,
            serverSelectionTimeoutMS=5000,
            connectTimeoutMS=5000,
            socketTimeoutMS=30000,
        )
        try:
            _client.admin.command("ping")
            logger.info("MongoDB connection successful")
        except ConnectionFailure as e:
            logger.error(f"MongoDB connection failed: {e}")
            raise
    return _client


def get_database() -> Database:
    """Get the application database"""
    global _database
    if _database is None:
        client = get_client()
        _database = client[settings.mongo_db]
        logger.info(f"Using database: {settings.mongo_db}")
    return _database


def get_collection(name: str) -> Collection:
    """Get a collection from the database"""
    db = get_database()
    return db[name]


def close_connection() -> None:
    """Close MongoDB connection"""
    global _client, _database
    if _client is not None:
        _client.close()
        _client = None
        _database = None
        logger.info("MongoDB connection closed")


def create_indexes(db: Optional[Database] = None) -> None:
    """Create all required indexes"""
    db = db if db is not None else get_database()
    logger.info("Creating MongoDB indexes...")
    
    definitions = db[DEFINITIONS]
    definitions.create_index("definition_id", unique=True)
    definitions.create_index([("entity_type", ASCENDING), ("is_default", ASCENDING)])
    definitions.create_index([("entity_type", ASCENDING), ("name", ASCENDING), ("version_number", DESCENDING)])
    
    # One instance per entity
    instances = db[INSTANCES]
    instances.create_index("instance_id", unique=True)
    instances.create_index([("entity_type", ASCENDING), ("entity_id", ASCENDING)], unique=True)
    instances.create_index("definition_id")
    
    # Sequence uniqueness is the cross-process guard on history ordering
    history = db[HISTORY]
    history.create_index("history_id", unique=True)
    history.create_index([("instance_id", ASCENDING), ("sequence", ASCENDING)], unique=True)
    
    approvals = db[APPROVALS]
    approvals.create_index("approval_id", unique=True)
    approvals.create_index([("instance_id", ASCENDING), ("transition_id", ASCENDING), ("status", ASCENDING)])
    approvals.create_index([("approver_type", ASCENDING), ("approver_id", ASCENDING), ("status", ASCENDING)])
    approvals.create_index([("status", ASCENDING), ("due_date", ASCENDING)])
    
    outbox = db[NOTIFICATION_OUTBOX]
    outbox.create_index("notification_id", unique=True)
    outbox.create_index([("status", ASCENDING), ("created_at", ASCENDING)])
    outbox.create_index("instance_id")
    
    logger.info("MongoDB indexes created successfully")


def health_check() -> Dict[str, Any]:
    """Check MongoDB health"""
    try:
        client = get_client()
        client.admin.command("ping")
        return {
            "status": "healthy",
            "database": settings.mongo_db,
            "connection": "ok"
        }
    except PyMongoError as e:
        logger.error(f"MongoDB health check failed: {e}")
        return {
            "status": "unhealthy",
            "database": settings.mongo_db,
            "error": str(e)
        }
