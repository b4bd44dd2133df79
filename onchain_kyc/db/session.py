from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession
from sqlalchemy.orm import sessionmaker
from onchain_kyc.core.config import settings

engine = create_async_engine(settings.DB_URL.replace("psycopg2", "asyncpg"))
SessionLocal = sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)
