from tortoise import Tortoise, connections
from backend.config import DB_URL


def tortoise_config(db_url=None):
    return {
        "connections": {"default": db_url or DB_URL},
        "apps": {
            "models": {
                "models": ["backend.models"],
                "default_connection": "default",
            }
        },
        "use_tz": True,
        "timezone": "UTC",
    }


async def init_db(db_url=None):
    await Tortoise.init(config=tortoise_config(db_url))
    await Tortoise.generate_schemas()


async def close_db():
    await connections.close_all()
