from fastapi import FastAPI, Depends, HTTPException, status, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from datetime import datetime, timedelta
from typing import Optional, List

from shared.utils import (
    settings, SuccessResponse, ErrorResponse, HealthResponse,
    AppException, NotFoundException, UnauthorizedException, ConflictException,
    ValidationException, create_access_token, verify_password, require_admin,
    validation_details,
)
from shared.logging_config import setup_logging, RequestLoggingMiddleware
from shared.security_config import setup_rate_limiting, SecurityHeadersMiddleware, limiter, slugify

from storefront.schemas import (
    CategoryCreate, CategoryResponse, ProductCreate, ProductUpdate, ProductResponse,
    ProductListResponse, OrderCreate, OrderResponse, OrderStatusUpdate,
    UserLogin, Token, DashboardResponse,
)
from storefront.orders import OrderPipeline
from storefront.seed import seed_admin, seed_catalog
from storefront.storage import Storage, build_storage

SERVICE_NAME = "storefront"
VERSION = "1.0.0"

# Setup Logging
logger = setup_logging(SERVICE_NAME, settings.LOG_LEVEL)

app = FastAPI(title="Storefront API", version=VERSION)

# Security Setup
setup_rate_limiting(app)
app.add_middleware(SecurityHeadersMiddleware)

# Middleware
app.add_middleware(RequestLoggingMiddleware, service_name=SERVICE_NAME)

# CORS Configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

@app.on_event("startup")
async def startup_storage():
    # A storage placed on app.state beforehand (tests, embedding) is kept
    if getattr(app.state, "storage", None) is None:
        app.state.storage = build_storage(settings.STORAGE_BACKEND)
    storage = app.state.storage
    await storage.connect()
    await seed_admin(storage, settings.ADMIN_USERNAME, settings.ADMIN_PASSWORD)
    if settings.SEED_CATALOG:
        await seed_catalog(storage)
    logger.info(f"Storage ready ({type(storage).__name__})")

@app.on_event("shutdown")
async def shutdown_storage():
    storage = getattr(app.state, "storage", None)
    if storage is not None:
        await storage.close()

# --- Error Handling ---

def error_response(status_code: int, error: str, details=None, headers=None) -> JSONResponse:
    body = ErrorResponse(error=error, details=details).model_dump()
    return JSONResponse(status_code=status_code, content=body, headers=headers)

@app.exception_handler(AppException)
async def app_exception_handler(request: Request, exc: AppException):
    return error_response(exc.status_code, exc.detail, exc.details, exc.headers)

@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return error_response(exc.status_code, str(exc.detail), headers=getattr(exc, "headers", None))

@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return error_response(status.HTTP_400_BAD_REQUEST, "Validation failed", validation_details(exc.errors()))

@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.error(
        "Unhandled error",
        exc_info=exc,
        extra={"request_id": getattr(request.state, "request_id", None), "path": request.url.path},
    )
    detail = "Internal server error" if settings.is_production else f"{type(exc).__name__}: {exc}"
    return error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, detail)

# --- Dependencies ---

def get_storage(request: Request) -> Storage:
    return request.app.state.storage

def get_pipeline(storage: Storage = Depends(get_storage)) -> OrderPipeline:
    return OrderPipeline(storage)

# --- Helpers ---

async def resolve_category_filter(storage: Storage, category: str) -> Optional[int]:
    if category.isdigit():
        return int(category)
    found = await storage.categories.get_by_slug(category)
    return found.id if found else None

async def ensure_category(storage: Storage, category_id: Optional[int]):
    if category_id is not None and await storage.categories.get(category_id) is None:
        raise ValidationException(
            f"Invalid category: {category_id} not found",
            details=[{"field": "category_id", "message": "Category does not exist", "type": "not_found"}],
        )

def resolve_slug(slug: Optional[str], name: str) -> str:
    slug = slug or slugify(name)
    if not slug:
        raise ValidationException(
            "Could not derive a slug from the name",
            details=[{"field": "slug", "message": "Provide a URL-safe slug", "type": "missing"}],
        )
    return slug

async def ensure_unique_slug(storage: Storage, slug: str, product_id: Optional[int] = None):
    existing = await storage.products.get_by_slug(slug)
    if existing and existing.id != product_id:
        raise ConflictException(f"Product slug '{slug}' already exists")

# Fields that may be explicitly cleared with null on update
NULLABLE_PRODUCT_FIELDS = {"sale_price", "category_id", "image", "badge"}

# --- Endpoints ---

@app.get("/health", response_model=HealthResponse)
async def health_check(storage: Storage = Depends(get_storage)):
    db_status = "connected" if await storage.ping() else "disconnected"
    if db_status != "connected":
        logger.error(f"Health Check Failed: DB={db_status}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"Service Unhealthy: DB={db_status}"
        )
    return HealthResponse(
        service=SERVICE_NAME,
        status="healthy",
        timestamp=datetime.utcnow(),
        version=VERSION,
        database=db_status,
    )

# Auth
@app.post("/api/auth/login", response_model=SuccessResponse[Token])
@limiter.limit(settings.LOGIN_RATE_LIMIT)
async def login(credentials: UserLogin, request: Request, storage: Storage = Depends(get_storage)):
    user = await storage.users.get_by_username(credentials.username)
    if not user or not verify_password(credentials.password, user.password_hash):
        raise UnauthorizedException("Incorrect username or password")

    expires = timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    access_token = create_access_token(
        data={"sub": str(user.id), "username": user.username, "is_admin": user.is_admin},
        expires_delta=expires
    )
    return SuccessResponse(data=Token(
        access_token=access_token,
        token_type="bearer",
        expires_in=int(expires.total_seconds())
    ))

# Catalog
@app.get("/api/products", response_model=SuccessResponse[ProductListResponse])
@limiter.limit(settings.DEFAULT_RATE_LIMIT)
async def list_products(
    request: Request,
    category: Optional[str] = None,
    featured: Optional[bool] = None,
    storage: Storage = Depends(get_storage)
):
    filters = {"is_active": True}
    if category:
        category_id = await resolve_category_filter(storage, category)
        if category_id is None:
            return SuccessResponse(data=ProductListResponse(products=[], total=0))
        filters["category_id"] = category_id
    if featured is not None:
        filters["featured"] = featured

    products = [ProductResponse.from_db(p) for p in await storage.products.list(**filters)]
    return SuccessResponse(data=ProductListResponse(products=products, total=len(products)))

@app.get("/api/products/{product_id}", response_model=SuccessResponse[ProductResponse])
@limiter.limit(settings.DEFAULT_RATE_LIMIT)
async def get_product(product_id: int, request: Request, storage: Storage = Depends(get_storage)):
    product = await storage.products.get(product_id)
    if not product or not product.is_active:
        raise NotFoundException("Product not found")
    return SuccessResponse(data=ProductResponse.from_db(product))

@app.get("/api/categories", response_model=SuccessResponse[List[CategoryResponse]])
async def list_categories(storage: Storage = Depends(get_storage)):
    categories = await storage.categories.list()
    return SuccessResponse(data=[CategoryResponse(**c.model_dump()) for c in categories])

# Orders
@app.post("/api/orders", response_model=SuccessResponse[OrderResponse], status_code=status.HTTP_201_CREATED)
@limiter.limit(settings.DEFAULT_RATE_LIMIT)
async def create_order(order: OrderCreate, request: Request, pipeline: OrderPipeline = Depends(get_pipeline)):
    created = await pipeline.create_order(order)
    return SuccessResponse(data=OrderResponse.from_db(created), message="Order created successfully")

# --- Admin ---

@app.get("/api/admin/orders", response_model=SuccessResponse[List[OrderResponse]])
async def admin_list_orders(
    status_filter: Optional[str] = Query(None, alias="status"),
    admin: dict = Depends(require_admin),
    pipeline: OrderPipeline = Depends(get_pipeline)
):
    orders = await pipeline.list_orders(status_filter)
    return SuccessResponse(data=[OrderResponse.from_db(o) for o in orders])

@app.get("/api/admin/orders/{order_id}", response_model=SuccessResponse[OrderResponse])
async def admin_get_order(order_id: int, admin: dict = Depends(require_admin),
                          pipeline: OrderPipeline = Depends(get_pipeline)):
    order = await pipeline.get_order(order_id)
    return SuccessResponse(data=OrderResponse.from_db(order))

@app.put("/api/admin/orders/{order_id}/status", response_model=SuccessResponse[OrderResponse])
async def admin_update_order_status(order_id: int, status_update: OrderStatusUpdate,
                                    admin: dict = Depends(require_admin),
                                    pipeline: OrderPipeline = Depends(get_pipeline)):
    order = await pipeline.update_order_status(order_id, status_update.status)
    return SuccessResponse(data=OrderResponse.from_db(order), message=f"Order marked {order.status}")

@app.get("/api/admin/products", response_model=SuccessResponse[ProductListResponse])
async def admin_list_products(admin: dict = Depends(require_admin), storage: Storage = Depends(get_storage)):
    products = [ProductResponse.from_db(p) for p in await storage.products.list()]
    return SuccessResponse(data=ProductListResponse(products=products, total=len(products)))

@app.post("/api/admin/products", response_model=SuccessResponse[ProductResponse], status_code=status.HTTP_201_CREATED)
async def admin_create_product(product: ProductCreate, admin: dict = Depends(require_admin),
                               storage: Storage = Depends(get_storage)):
    data = product.model_dump()
    data["slug"] = resolve_slug(data["slug"], data["name"])
    await ensure_unique_slug(storage, data["slug"])
    await ensure_category(storage, data["category_id"])

    created = await storage.products.create(data)
    logger.info("Product created", extra={"product_id": created.id, "user_id": admin.get("sub")})
    return SuccessResponse(data=ProductResponse.from_db(created), message="Product created successfully")

@app.put("/api/admin/products/{product_id}", response_model=SuccessResponse[ProductResponse])
async def admin_update_product(product_id: int, product_update: ProductUpdate,
                               admin: dict = Depends(require_admin),
                               storage: Storage = Depends(get_storage)):
    if await storage.products.get(product_id) is None:
        raise NotFoundException("Product not found")

    update_data = {
        k: v for k, v in product_update.model_dump(exclude_unset=True).items()
        if v is not None or k in NULLABLE_PRODUCT_FIELDS
    }
    if update_data.get("slug"):
        await ensure_unique_slug(storage, update_data["slug"], product_id)
    if "category_id" in update_data:
        await ensure_category(storage, update_data["category_id"])

    if update_data:
        update_data["updated_at"] = datetime.utcnow()
    updated = await storage.products.update(product_id, update_data)
    if updated is None:
        raise NotFoundException("Product not found")
    return SuccessResponse(data=ProductResponse.from_db(updated), message="Product updated successfully")

@app.delete("/api/admin/products/{product_id}", response_model=SuccessResponse[dict])
async def admin_delete_product(product_id: int, admin: dict = Depends(require_admin),
                               storage: Storage = Depends(get_storage)):
    if not await storage.products.delete(product_id):
        raise NotFoundException("Product not found")
    logger.info("Product deleted", extra={"product_id": product_id, "user_id": admin.get("sub")})
    return SuccessResponse(data={"id": product_id}, message="Product deleted successfully")

@app.post("/api/admin/categories", response_model=SuccessResponse[CategoryResponse], status_code=status.HTTP_201_CREATED)
async def admin_create_category(category: CategoryCreate, admin: dict = Depends(require_admin),
                                storage: Storage = Depends(get_storage)):
    data = category.model_dump()
    data["slug"] = resolve_slug(data["slug"], data["name"])
    if await storage.categories.get_by_slug(data["slug"]):
        raise ConflictException("Category slug already exists")

    created = await storage.categories.create(data)
    return SuccessResponse(data=CategoryResponse(**created.model_dump()), message="Category created successfully")

@app.get("/api/admin/dashboard", response_model=SuccessResponse[DashboardResponse])
async def admin_dashboard(admin: dict = Depends(require_admin), pipeline: OrderPipeline = Depends(get_pipeline)):
    return SuccessResponse(data=DashboardResponse(**await pipeline.dashboard()))
