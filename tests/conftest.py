import boto3
import pytest
from botocore.config import Config as BotoConfig
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from factories import KURIR_CONFIG, MITRA_ID, OTHER_MITRA_ID, ZONE_CONFIG
from order_service import models
from order_service.database import Base
from order_service.lifecycle import OrderLifecycleService
from order_service.storage import ProofStorage


@pytest.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'orders.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
async def session_factory(engine):
    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with factory() as session:
        async with session.begin():
            session.add_all([
                models.Service(id="svc-kurir", mitra_id=MITRA_ID, name="Kurir", is_active=True, config_json=KURIR_CONFIG),
                models.Service(id="svc-zone", mitra_id=MITRA_ID, name="Zona", is_active=True, config_json=ZONE_CONFIG),
                models.Service(id="svc-off", mitra_id=MITRA_ID, name="Off", is_active=False, config_json=KURIR_CONFIG),
                models.Driver(id="drv-1", mitra_id=MITRA_ID, name="Budi", is_active=True),
                models.Driver(id="drv-2", mitra_id=MITRA_ID, name="Sari", is_active=True),
                models.Driver(id="drv-idle", mitra_id=MITRA_ID, name="Joko", is_active=False),
                models.Driver(id="drv-unqualified", mitra_id=MITRA_ID, name="Rina", is_active=True),
                models.Driver(id="drv-other", mitra_id=OTHER_MITRA_ID, name="Dewi", is_active=True),
            ])
            await session.flush()
            session.add_all([
                models.DriverService(driver_id="drv-1", service_id="svc-kurir"),
                models.DriverService(driver_id="drv-2", service_id="svc-kurir"),
                models.DriverService(driver_id="drv-idle", service_id="svc-kurir"),
                models.DriverService(driver_id="drv-other", service_id="svc-kurir"),
            ])
    return factory


@pytest.fixture
def proof_storage():
    client = boto3.client(
        "s3",
        endpoint_url="http://localhost:9000",
        region_name="us-east-1",
        aws_access_key_id="test-key",
        aws_secret_access_key="test-secret",
        config=BotoConfig(signature_version="s3v4", s3={"addressing_style": "path"}),
    )
    return ProofStorage(client, "test-proofs", expires_in=600)


@pytest.fixture
def lifecycle(session_factory, proof_storage):
    return OrderLifecycleService(session_factory, storage=proof_storage)
