"""
Database Schemas for Campus Connect

Each Pydantic model corresponds to a MongoDB collection.
Collection name is the lowercase class name (e.g., User -> "user").
"""
from datetime import datetime, timezone
from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class User(BaseModel):
    fullName: str = Field(..., description="Full name")
    branch: str = Field(..., description="Branch / department")
    year: int = Field(..., description="Year of study")
    rollNo: str = Field(..., description="College roll number")
    email: str = Field(..., description="Email address, unique per user")
    password: str = Field(..., description="Hashed password")
    isOnline: bool = Field(False, description="Whether the user has a live connection")
    lastSeen: datetime = Field(default_factory=utcnow, description="Last presence change")


class Message(BaseModel):
    sender: str = Field(..., min_length=1, description="Sender email")
    receiver: str = Field(..., min_length=1, description="Receiver email")
    message: str = Field(..., min_length=1, description="Message text")
    timestamp: datetime = Field(default_factory=utcnow)
    read: bool = Field(False, description="Set once the receiver opens the conversation")


class CollaborationPost(BaseModel):
    title: str
    technologies: str
    description: str
    vacancies: int
    image: str = Field(..., description="Stored image filename")
    userEmail: str = Field(..., description="Creator email")
    createdAt: datetime = Field(default_factory=utcnow)


class AlumniPost(BaseModel):
    title: str
    developers: str
    image: str = Field(..., description="Stored image filename")
    userEmail: str = Field(..., description="Creator email")
    createdAt: datetime = Field(default_factory=utcnow)
