from pymongo import MongoClient
import logging

from config import config

logger = logging.getLogger(__name__)


class MongoRepositorySingleton:
    _client = None
    _db_instance = None

    @classmethod
    def get_db(cls):
        """Process-wide MongoDB database named by CHAT_DB_NAME on MONGO_URI."""
        if cls._db_instance is not None:
            return cls._db_instance
        db_name = config.CHAT_DB_NAME
        logger.info("Connecting to MongoDB database %s", db_name)
        cls._client = MongoClient(config.MONGO_URI, serverSelectionTimeoutMS=5000)
        cls._db_instance = cls._client[db_name]
        return cls._db_instance


def get_db():
    return MongoRepositorySingleton.get_db()
