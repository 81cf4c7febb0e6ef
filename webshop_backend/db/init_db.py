# webshop_backend/db/init_db.py
import structlog
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession

from webshop_backend.db.database import Base
from webshop_backend.db.functions import count_products
from webshop_backend.db.models import Product, CartItem  # noqa: F401  (регистрация таблиц)

logger = structlog.get_logger(__name__)

SAMPLE_PRODUCTS = [
    {
        "name": "Premium Headphones",
        "description": "Noise-cancelling wireless headphones with superior sound quality",
        "price": 199.99,
        "image": "https://via.placeholder.com/300?text=Headphones",
        "details": "Features include 30-hour battery life, Bluetooth 5.0, and comfortable over-ear design.",
    },
    {
        "name": "Smartphone",
        "description": "Latest model with high-resolution camera and fast processor",
        "price": 699.99,
        "image": "https://via.placeholder.com/300?text=Smartphone",
        "details": "6.7-inch OLED display, 5G capable, 128GB storage, water resistant.",
    },
    {
        "name": "Coffee Maker",
        "description": "Programmable coffee machine with built-in grinder",
        "price": 149.99,
        "image": "https://via.placeholder.com/300?text=CoffeeMaker",
        "details": "Customizable brew strength, timer function, keeps coffee hot for 2 hours.",
    },
    {
        "name": "Fitness Tracker",
        "description": "Monitors heart rate, steps, and sleep patterns",
        "price": 89.99,
        "image": "https://via.placeholder.com/300?text=FitnessTracker",
        "details": "Waterproof up to 50m, 7-day battery life, smartphone notifications.",
    },
    {
        "name": "Wireless Earbuds",
        "description": "Truly wireless earbuds with charging case",
        "price": 129.99,
        "image": "https://via.placeholder.com/300?text=Earbuds",
        "details": "Active noise cancellation, touch controls, 24-hour total battery life.",
    },
    {
        "name": "Smart Watch",
        "description": "Health monitoring and notifications on your wrist",
        "price": 249.99,
        "image": "https://via.placeholder.com/300?text=SmartWatch",
        "details": "Heart rate monitor, GPS, 50+ workout modes, sapphire crystal display.",
    },
]


async def init_db(engine: AsyncEngine):
    async with engine.begin() as conn:
        # Создание всех таблиц
        await conn.run_sync(Base.metadata.create_all)


async def seed_products(db: AsyncSession) -> int:
    """Insert the sample catalog if the product table is empty."""
    if await count_products(db) > 0:
        return 0
    db.add_all([Product(**product) for product in SAMPLE_PRODUCTS])
    await db.commit()
    logger.info("Seeded sample catalog", products=len(SAMPLE_PRODUCTS))
    return len(SAMPLE_PRODUCTS)
