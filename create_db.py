import asyncio
import asyncpg
from src.config import settings

async def create_db():
    config = settings.database
    try:
        # Подключаемся к служебной БД postgres, чтобы создать рабочую
        sys_conn = await asyncpg.connect(
            user=config.DB_USER,
            password=config.DB_PASSWORD,
            host=config.DB_HOST,
            port=config.DB_PORT,
            database='postgres'
        )

        exists = await sys_conn.fetchval("SELECT 1 FROM pg_database WHERE datname = $1", config.DB_NAME)
        if not exists:
            print(f"Creating database {config.DB_NAME}...")
            await sys_conn.execute(f'CREATE DATABASE "{config.DB_NAME}"')
            print("Database created.")
        else:
            print(f"Database {config.DB_NAME} already exists.")

        await sys_conn.close()

    except (OSError, asyncpg.PostgresError) as e:
        print(f"Error: {e}")

if __name__ == "__main__":
    asyncio.run(create_db())
