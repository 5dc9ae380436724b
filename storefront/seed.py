import logging

from shared.utils import get_password_hash
from storefront.storage import Storage

logger = logging.getLogger("storefront.seed")

# Sample lighting catalog, prices in paise
SEED_CATEGORIES: list[dict] = [
    {"name": "Pendant Lights", "slug": "pendant-lights", "image": "https://images.unsplash.com/photo-1513506003901-1e6a229e2d15?auto=format&fit=crop&w=500&h=500"},
    {"name": "LED Strips", "slug": "led-strips", "image": "https://images.unsplash.com/photo-1558002038-1055907df827?auto=format&fit=crop&w=500&h=500"},
    {"name": "Spotlights", "slug": "spotlights", "image": "https://images.unsplash.com/photo-1513694203232-719a280e022f?auto=format&fit=crop&w=500&h=500"},
    {"name": "Outdoor Lighting", "slug": "outdoor-lighting", "image": "https://images.unsplash.com/photo-1565538420870-da08ff96a207?auto=format&fit=crop&w=500&h=400"},
]

SEED_PRODUCTS: list[dict] = [
    {"name": "Smart LED Bulb", "slug": "smart-led-bulb", "description": "Color changing, compatible with Alexa & Google Home.", "price": 79900, "stock": 45, "category": "pendant-lights", "featured": True, "badge": "new"},
    {"name": "LED Strip Light Kit", "slug": "led-strip-light-kit", "description": "16 colors, remote controlled, 5m length.", "price": 129900, "stock": 32, "category": "led-strips", "featured": True, "badge": "best seller"},
    {"name": "Designer Pendant Light", "slug": "designer-pendant-light", "description": "Modern geometric design, adjustable height.", "price": 249900, "stock": 18, "category": "pendant-lights", "featured": True},
    {"name": "Solar Garden Lights", "slug": "solar-garden-lights", "description": "Set of 6, waterproof, auto on/off.", "price": 149900, "sale_price": 99900, "stock": 0, "category": "outdoor-lighting", "featured": True, "badge": "sale"},
    {"name": "Recessed Spotlight", "slug": "recessed-spotlight", "description": "Adjustable angle, warm white, 12W.", "price": 69900, "stock": 25, "category": "spotlights"},
    {"name": "LED Desk Lamp", "slug": "led-desk-lamp", "description": "Touch control, 5 brightness levels, USB charging port.", "price": 149900, "stock": 12, "category": "pendant-lights"},
    {"name": "Wall Sconce Light", "slug": "wall-sconce-light", "description": "Brushed brass finish, warm ambient glow.", "price": 189900, "stock": 15, "category": "pendant-lights"},
    {"name": "LED Fairy Lights", "slug": "led-fairy-lights", "description": "10m copper wire, 100 warm white LEDs.", "price": 59900, "stock": 40, "category": "led-strips"},
]


async def seed_admin(storage: Storage, username: str, password: str) -> None:
    if await storage.users.get_by_username(username):
        return
    await storage.users.create({
        "username": username,
        "password_hash": get_password_hash(password),
        "is_admin": True,
    })
    logger.info(f"Seeded admin user '{username}'")


async def seed_catalog(storage: Storage) -> int:
    """Insert the sample catalog into an empty store. Returns products inserted."""
    if await storage.products.list():
        return 0

    category_ids = {}
    for data in SEED_CATEGORIES:
        category = await storage.categories.get_by_slug(data["slug"])
        if category is None:
            category = await storage.categories.create(data)
        category_ids[category.slug] = category.id

    for data in SEED_PRODUCTS:
        product = {k: v for k, v in data.items() if k != "category"}
        product["category_id"] = category_ids.get(data["category"])
        await storage.products.create(product)

    logger.info(f"Seeded {len(SEED_PRODUCTS)} products")
    return len(SEED_PRODUCTS)
