import asyncio
import sys
import os

# Add project root to path
sys.path.append(os.getcwd())

from src.config import settings
from src.core.auth.tokens import TokenService
from src.core.users.repository import UserRepository
from src.infra.database import DatabaseManager

DEV_USERS = (
    (1, "+910000000001", "Dev Admin", "admin"),
    (101, "+910000000101", "Dev Customer", "customer"),
    (201, "+910000000201", "Dev Worker", "worker"),
)

async def main():
    db = DatabaseManager(settings.database)
    await db.connect()

    print("Connected to DB")

    query = """
        INSERT INTO users (id, phone, name, user_type, is_active, is_verified)
        VALUES ($1, $2, $3, $4, TRUE, TRUE)
        ON CONFLICT (id) DO NOTHING
    """

    for user_id, phone, name, user_type in DEV_USERS:
        await db.execute(query, user_id, phone, name, user_type)
    await db.execute("SELECT setval('users_id_seq', GREATEST((SELECT MAX(id) FROM users), 1000))")
    print(f"Dev users created: {', '.join(str(u[0]) for u in DEV_USERS)}")

    if settings.auth.JWT_SECRET:
        users = UserRepository(db)
        tokens = TokenService(settings.auth, users)
        for user_id, _, name, _ in DEV_USERS:
            actor = await users.get_by_id(user_id)
            print(f"{name}: {tokens.issue(actor)}")

    await db.disconnect()

if __name__ == "__main__":
    asyncio.run(main())
