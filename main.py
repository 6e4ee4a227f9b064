import logging
import sqlite3
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from contact_store import ContactStore, SqliteContactStore
from db_models import AddContactRequest, FinalResponse, IdentifyRequest, LinkPrecedence
from db_setup import get_db, init_db
from errors import StoreError, ValidationError
from logging_config import setup_logging
from resolver import IdentityResolver
from settings import get_settings

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_: FastAPI):
    setup_logging()
    init_db()
    yield


settings = get_settings()

app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    lifespan=lifespan,
)


def get_contact_store(conn: sqlite3.Connection = Depends(get_db)) -> ContactStore:
    return SqliteContactStore(conn)


def get_resolver(store: ContactStore = Depends(get_contact_store)) -> IdentityResolver:
    return IdentityResolver(store, max_link_depth=get_settings().max_link_depth)


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    return JSONResponse(status_code=400, content={"error": str(exc)})


@app.exception_handler(RequestValidationError)
async def request_validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=400, content={"error": "Invalid request body"})


@app.exception_handler(StoreError)
async def store_error_handler(request: Request, exc: StoreError):
    logger.error("Error in %s: %s", request.url.path, exc, exc_info=exc)
    return JSONResponse(status_code=500, content={"error": "Internal server error"})


@app.get("/")
def root():
    return {"message": "Contact reconciliation API is up"}


@app.post("/identify", response_model=FinalResponse)
def identify(request: IdentifyRequest, resolver: IdentityResolver = Depends(get_resolver)):
    view = resolver.identify(request.email, request.phoneNumber)
    return FinalResponse(contact=view.to_response())


@app.post("/add-contact")
def add_contact(request: AddContactRequest, store: ContactStore = Depends(get_contact_store)):
    """Import a contact as-is, refusing rows that would break the cluster shape."""
    email = request.email or None
    phone = request.phoneNumber or None
    if not email and not phone:
        raise ValidationError("Either email or phoneNumber must be provided")

    try:
        precedence = LinkPrecedence(request.linkPrecedence)
    except ValueError:
        raise ValidationError("linkPrecedence must be 'primary' or 'secondary'") from None

    with store.transaction():
        if precedence == LinkPrecedence.PRIMARY:
            if request.linkedId is not None:
                raise ValidationError("A primary contact cannot have a linkedId")
        else:
            if request.linkedId is None:
                raise ValidationError("A secondary contact needs a linkedId")
            parent = store.get(request.linkedId)
            if parent is None:
                raise ValidationError(f"Contact {request.linkedId} does not exist")
            if not parent.is_primary:
                raise ValidationError(f"Contact {request.linkedId} is not a primary contact")

        if request.id is not None and store.exists(request.id):
            raise ValidationError(f"Contact {request.id} already exists")

        contact = store.create(
            email=email,
            phone_number=phone,
            link_precedence=precedence,
            linked_id=request.linkedId,
            contact_id=request.id,
            created_at=request.createdAt,
        )

    logger.info("Imported %s contact %s", precedence.value, contact.id)
    return {"message": "Contact added successfully", "contact_id": contact.id}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=settings.host, port=settings.port)
