import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, ClassVar, Optional

from fastapi import Depends, FastAPI, File, Form, HTTPException, Request, UploadFile, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from passlib.context import CryptContext
from pydantic import BaseModel, model_validator
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError, PyMongoError
from starlette.concurrency import run_in_threadpool

from config import Config
from database import (
    connect,
    create_document,
    ensure_indexes,
    get_db,
    get_documents,
    serialize_doc,
    to_collection_name,
    to_object_id,
)
from realtime import ConnectionRegistry, deliver_message, get_registry, router as realtime_router
from schemas import AlumniPost, CollaborationPost, Message, User
from uploads import ImageStore, UploadRejected, get_image_store

logging.basicConfig(level=Config.LOG_LEVEL)
logger = logging.getLogger(__name__)

USERS = to_collection_name(User)
MESSAGES = to_collection_name(Message)
COLLABORATION_POSTS = to_collection_name(CollaborationPost)
ALUMNI_POSTS = to_collection_name(AlumniPost)

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

# Helpers

def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)


def get_user_by_email(db: Database, email: str) -> Optional[dict]:
    return db[USERS].find_one({"email": email})


def _first_present(values: dict, *keys: str) -> Any:
    for key in keys:
        value = values.get(key)
        if value not in (None, ""):
            return value
    return None


# Models for requests/responses
class ProfileFields(BaseModel):
    """Profile payload accepted by signup and profile update.

    Two client generations send these fields under different names
    (firstName/lastName/age/rollNumber/signupEmail). They are folded onto the
    canonical names here, once, before any handler sees the payload.
    """

    fullName: Optional[str] = None
    branch: Optional[str] = None
    year: Optional[int] = None
    rollNo: Optional[str] = None
    email: Optional[str] = None
    password: Optional[str] = None

    email_keys: ClassVar[tuple] = ("email", "signupEmail")

    @model_validator(mode="before")
    @classmethod
    def normalize_aliases(cls, values):
        if not isinstance(values, dict):
            return values
        return {
            "fullName": _first_present(values, "fullName", "firstName"),
            "branch": _first_present(values, "branch", "lastName"),
            "year": _first_present(values, "year", "age"),
            "rollNo": _first_present(values, "rollNo", "rollNumber"),
            "email": _first_present(values, *cls.email_keys),
            "password": values.get("password") or None,
        }


class ProfileUpdate(ProfileFields):
    # The record is looked up by its stored email only
    email_keys: ClassVar[tuple] = ("email",)


class SignInBody(BaseModel):
    email: Optional[str] = None
    password: Optional[str] = None


class SendMessageBody(BaseModel):
    senderEmail: Optional[str] = None
    receiverEmail: Optional[str] = None
    message: Optional[str] = None


class MarkReadBody(BaseModel):
    sender: str
    receiver: str


def user_profile(user: dict) -> dict:
    return {
        "fullName": user.get("fullName"),
        "email": user.get("email"),
        "branch": user.get("branch"),
        "year": user.get("year"),
        "rollNo": user.get("rollNo"),
    }


# App setup
def create_app(database: Optional[Database] = None, upload_dir: Optional[str] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await run_in_threadpool(ensure_indexes, app.state.db)
        yield
        app.state.registry.clear()

    app = FastAPI(title="Campus Connect API", lifespan=lifespan)
    app.state.db = database if database is not None else connect()
    app.state.registry = ConnectionRegistry()
    app.state.images = ImageStore(upload_dir or Config.UPLOAD_DIR)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=Config.ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(PyMongoError)
    @app.exception_handler(OSError)
    async def server_error_handler(request: Request, exc: Exception):
        logger.exception("Unhandled %s on %s %s", type(exc).__name__, request.method, request.url.path)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"detail": "Server error", "error": str(exc)},
        )

    app.include_router(realtime_router)
    register_routes(app)
    app.mount("/uploads", StaticFiles(directory=str(app.state.images.directory)), name="uploads")
    return app


def register_routes(app: FastAPI) -> None:

    @app.get("/")
    def read_root():
        return {"message": "Campus Connect API is running"}

    @app.get("/test")
    def test_database(db: Database = Depends(get_db)):
        response = {
            "backend": "✅ Running",
            "database": "❌ Not Available",
            "database_name": None,
            "connection_status": "Not Connected",
            "collections": [],
        }
        try:
            response["database_name"] = db.name
            response["collections"] = db.list_collection_names()[:10]
            response["connection_status"] = "Connected"
            response["database"] = "✅ Connected & Working"
        except PyMongoError as e:
            response["database"] = f"⚠️  Connected but Error: {str(e)[:50]}"
        response["database_url"] = "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set"
        return response

    # Auth Endpoints
    @app.post("/api/signup", status_code=status.HTTP_201_CREATED)
    def signup(body: ProfileFields, db: Database = Depends(get_db)):
        if not body.email or not body.password:
            logger.warning("Signup rejected: missing email or password")
            raise HTTPException(status_code=400, detail="Email and password are required")

        if get_user_by_email(db, body.email):
            logger.warning("User already exists: %s", body.email)
            raise HTTPException(status_code=400, detail="User already exists")

        local_part = body.email.split("@")[0]
        user_doc = User(
            fullName=body.fullName or local_part,
            branch=body.branch or "",
            year=body.year if body.year is not None else 0,
            rollNo=body.rollNo or local_part or "unknown",
            email=body.email,
            password=hash_password(body.password),
        )
        try:
            create_document(db, USERS, user_doc)
        except DuplicateKeyError:
            # Lost a race with a concurrent signup for the same email
            raise HTTPException(status_code=400, detail="User already exists")

        logger.info("User created successfully: %s", body.email)
        return {"message": "User created successfully"}

    @app.post("/api/signin")
    def signin(body: SignInBody, db: Database = Depends(get_db)):
        user = get_user_by_email(db, body.email) if body.email else None
        if not user:
            logger.warning("User not found: %s", body.email)
            raise HTTPException(status_code=400, detail="User not found")

        if not body.password or not verify_password(body.password, user.get("password", "")):
            logger.warning("Invalid password for: %s", body.email)
            raise HTTPException(status_code=400, detail="Invalid credentials")

        db[USERS].update_one(
            {"email": body.email},
            {"$set": {"isOnline": True, "lastSeen": datetime.now(timezone.utc)}},
        )
        logger.info("Login successful: %s", body.email)
        return {"message": "Login successful", "user": user_profile(user)}

    # Users Endpoints
    @app.get("/api/user/{email}")
    def get_user(email: str, db: Database = Depends(get_db)):
        user = get_user_by_email(db, email)
        if not user:
            raise HTTPException(404, "User not found")
        profile = user_profile(user)
        # Alias keys for clients using the firstName/lastName/age naming
        profile["firstName"] = profile["fullName"] or ""
        profile["lastName"] = profile["branch"] or ""
        profile["age"] = profile["year"]
        return profile

    @app.put("/api/update-profile")
    def update_profile(body: ProfileUpdate, db: Database = Depends(get_db)):
        if not body.email:
            raise HTTPException(status_code=400, detail="Email is required to update profile")

        if not get_user_by_email(db, body.email):
            raise HTTPException(404, "User not found")

        update = body.model_dump(exclude={"email", "password"}, exclude_none=True)
        if body.password:
            update["password"] = hash_password(body.password)
        if not update:
            raise HTTPException(status_code=400, detail="No valid fields provided to update")

        db[USERS].update_one({"email": body.email}, {"$set": update})
        logger.info("User profile updated successfully for %s", body.email)
        return {"message": "Profile updated successfully"}

    @app.get("/api/users")
    def get_all_users(db: Database = Depends(get_db)):
        users = get_documents(db, USERS, projection={"fullName": 1, "email": 1, "isOnline": 1, "lastSeen": 1})
        return [serialize_doc(u) for u in users]

    # Messaging Endpoints
    @app.post("/api/send-message")
    async def send_message(
        body: SendMessageBody,
        db: Database = Depends(get_db),
        registry: ConnectionRegistry = Depends(get_registry),
    ):
        if not body.senderEmail or not body.receiverEmail or not body.message:
            raise HTTPException(status_code=400, detail="All fields are required")

        message = Message(sender=body.senderEmail, receiver=body.receiverEmail, message=body.message)
        doc = await run_in_threadpool(create_document, db, MESSAGES, message)
        await deliver_message(registry, doc)

        logger.info("Message sent from %s to %s", body.senderEmail, body.receiverEmail)
        return {"success": True, "message": "Message sent successfully"}

    @app.get("/api/messages/{sender}/{receiver}")
    def get_conversation(sender: str, receiver: str, db: Database = Depends(get_db)):
        messages = get_documents(
            db,
            MESSAGES,
            {"$or": [
                {"sender": sender, "receiver": receiver},
                {"sender": receiver, "receiver": sender},
            ]},
            sort=[("timestamp", 1)],
        )
        return [serialize_doc(m) for m in messages]

    @app.get("/api/unread-counts/{user_email}")
    def get_unread_counts(user_email: str, db: Database = Depends(get_db)):
        unread_counts = db[MESSAGES].aggregate([
            {"$match": {"receiver": user_email, "read": False}},
            {"$group": {"_id": "$sender", "count": {"$sum": 1}}},
        ])
        return {item["_id"]: item["count"] for item in unread_counts}

    @app.post("/api/mark-read")
    def mark_read(body: MarkReadBody, db: Database = Depends(get_db)):
        res = db[MESSAGES].update_many(
            {"receiver": body.receiver, "sender": body.sender, "read": False},
            {"$set": {"read": True}},
        )
        logger.debug("Marked %d messages read (%s -> %s)", res.modified_count, body.sender, body.receiver)
        return {"success": True}

    @app.get("/api/last-message-times/{user_email}")
    def get_last_message_times(user_email: str, db: Database = Depends(get_db)):
        last_messages = db[MESSAGES].aggregate([
            {"$match": {"$or": [{"sender": user_email}, {"receiver": user_email}]}},
            {"$sort": {"timestamp": -1}},
            {"$group": {
                "_id": {"$cond": [{"$eq": ["$sender", user_email]}, "$receiver", "$sender"]},
                "lastMessageTime": {"$first": "$timestamp"},
            }},
        ])
        return {item["_id"]: item["lastMessageTime"] for item in last_messages}

    @app.get("/api/total-unread/{user_email}")
    def get_total_unread(user_email: str, db: Database = Depends(get_db)):
        total = db[MESSAGES].count_documents({"receiver": user_email, "read": False})
        return {"totalUnread": total}

    # Post Endpoints
    def read_upload(images: ImageStore, image: Optional[UploadFile]) -> bytes:
        if image is None or not image.filename:
            raise HTTPException(status_code=400, detail="Image is required")
        try:
            return images.read_image(image)
        except UploadRejected as e:
            logger.warning("Upload rejected: %s", e)
            raise HTTPException(status_code=400, detail=str(e))

    def require_fields(fields: dict) -> None:
        if any(v in (None, "") for v in fields.values()):
            raise HTTPException(status_code=400, detail="All fields are required")

    @app.post("/api/collaboration-posts", status_code=status.HTTP_201_CREATED)
    def create_collaboration_post(
        title: Optional[str] = Form(None),
        technologies: Optional[str] = Form(None),
        description: Optional[str] = Form(None),
        vacancies: Optional[str] = Form(None),
        userEmail: Optional[str] = Form(None),
        image: Optional[UploadFile] = File(None),
        db: Database = Depends(get_db),
        images: ImageStore = Depends(get_image_store),
    ):
        contents = read_upload(images, image)
        fields = {
            "title": title,
            "technologies": technologies,
            "description": description,
            "vacancies": vacancies,
            "userEmail": userEmail,
        }
        require_fields(fields)
        try:
            fields["vacancies"] = int(vacancies)
        except ValueError:
            raise HTTPException(status_code=400, detail="Vacancies must be a number")

        post = CollaborationPost(image=images.save(contents, image.filename), **fields)
        doc = create_document(db, COLLABORATION_POSTS, post)
        logger.info("Collaboration post created by %s: %s", userEmail, doc["_id"])
        return {"message": "Post created successfully", "post": serialize_doc(doc)}

    @app.get("/api/collaboration-posts")
    def list_collaboration_posts(db: Database = Depends(get_db)):
        posts = get_documents(db, COLLABORATION_POSTS, sort=[("createdAt", -1)])
        return [serialize_doc(p) for p in posts]

    @app.delete("/api/collaboration-posts/{post_id}")
    def delete_collaboration_post(
        post_id: str,
        db: Database = Depends(get_db),
        images: ImageStore = Depends(get_image_store),
    ):
        _id = to_object_id(post_id)
        deleted = db[COLLABORATION_POSTS].find_one_and_delete({"_id": _id}) if _id else None
        if not deleted:
            raise HTTPException(404, "Post not found")

        images.delete(deleted["image"])
        logger.info("Post deleted successfully: %s", post_id)
        return {"message": "Post deleted successfully"}

    @app.post("/api/alumni-posts", status_code=status.HTTP_201_CREATED)
    def create_alumni_post(
        title: Optional[str] = Form(None),
        developers: Optional[str] = Form(None),
        userEmail: Optional[str] = Form(None),
        image: Optional[UploadFile] = File(None),
        db: Database = Depends(get_db),
        images: ImageStore = Depends(get_image_store),
    ):
        contents = read_upload(images, image)
        fields = {"title": title, "developers": developers, "userEmail": userEmail}
        require_fields(fields)

        post = AlumniPost(image=images.save(contents, image.filename), **fields)
        doc = create_document(db, ALUMNI_POSTS, post)
        logger.info("Alumni post created by %s: %s", userEmail, doc["_id"])
        return {"message": "Alumni post created successfully", "post": serialize_doc(doc)}

    @app.get("/api/alumni-posts")
    def list_alumni_posts(db: Database = Depends(get_db)):
        posts = get_documents(db, ALUMNI_POSTS, sort=[("createdAt", -1)])
        return [serialize_doc(p) for p in posts]


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=Config.APP_HOST, port=Config.PORT)
