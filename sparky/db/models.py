from datetime import date, datetime
from typing import Optional

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, declarative_base, mapped_column, relationship

Base = declarative_base()


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    email: Mapped[str] = mapped_column(String(255), unique=True, index=True, nullable=False)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    timezone: Mapped[str] = mapped_column(String(64), nullable=False, default="UTC")
    auto_clear_history: Mapped[str] = mapped_column(String(16), nullable=False, default="never")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)

    ai_services: Mapped[list["AIServiceSetting"]] = relationship(
        "AIServiceSetting", back_populates="user", cascade="all, delete-orphan"
    )
    chat_history: Mapped[list["ChatHistoryEntry"]] = relationship(
        "ChatHistoryEntry", back_populates="user", cascade="all, delete-orphan"
    )


class AIServiceSetting(Base):
    __tablename__ = "ai_service_settings"
    __table_args__ = (Index("ix_ai_service_settings_user_active", "user_id", "is_active"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)

    service_name: Mapped[str] = mapped_column(String(128), nullable=False)
    service_type: Mapped[str] = mapped_column(String(32), nullable=False)
    encrypted_api_key: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    api_key_iv: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    custom_url: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    model_name: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    system_prompt: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    user: Mapped[User] = relationship("User", back_populates="ai_services")


class ChatHistoryEntry(Base):
    __tablename__ = "sparky_chat_history"
    __table_args__ = (Index("ix_chat_history_user_created", "user_id", "created_at"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    message_type: Mapped[str] = mapped_column(String(16), nullable=False)
    metadata_json: Mapped[Optional[str]] = mapped_column("metadata", Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False, index=True)

    user: Mapped[User] = relationship("User", back_populates="chat_history")


class Food(Base):
    __tablename__ = "foods"
    __table_args__ = (Index("ix_foods_user_name", "user_id", "name"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    # NULL owner means a public food.
    user_id: Mapped[Optional[int]] = mapped_column(ForeignKey("users.id"), nullable=True, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    is_custom: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    calories: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    protein: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    carbs: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    fat: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    serving_size: Mapped[float] = mapped_column(Float, nullable=False, default=100)
    serving_unit: Mapped[str] = mapped_column(String(32), nullable=False, default="g")

    saturated_fat: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    polyunsaturated_fat: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    monounsaturated_fat: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    trans_fat: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    cholesterol: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    sodium: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    potassium: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    dietary_fiber: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    sugars: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    vitamin_a: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    vitamin_c: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    calcium: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    iron: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)


class FoodEntry(Base):
    __tablename__ = "food_entries"
    __table_args__ = (Index("ix_food_entries_user_date", "user_id", "entry_date"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    food_id: Mapped[int] = mapped_column(ForeignKey("foods.id"), nullable=False)
    meal_type: Mapped[str] = mapped_column(String(32), nullable=False)
    quantity: Mapped[float] = mapped_column(Float, nullable=False)
    unit: Mapped[str] = mapped_column(String(32), nullable=False)
    entry_date: Mapped[date] = mapped_column(Date, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)

    food: Mapped[Food] = relationship("Food")


class Exercise(Base):
    __tablename__ = "exercises"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    user_id: Mapped[Optional[int]] = mapped_column(ForeignKey("users.id"), nullable=True, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    category: Mapped[str] = mapped_column(String(64), nullable=False, default="general")
    calories_per_hour: Mapped[float] = mapped_column(Float, nullable=False, default=300)
    is_custom: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)


class ExerciseEntry(Base):
    __tablename__ = "exercise_entries"
    __table_args__ = (Index("ix_exercise_entries_user_date", "user_id", "entry_date"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    exercise_id: Mapped[int] = mapped_column(ForeignKey("exercises.id"), nullable=False)
    entry_date: Mapped[date] = mapped_column(Date, nullable=False)
    duration_minutes: Mapped[float] = mapped_column(Float, nullable=False)
    calories_burned: Mapped[float] = mapped_column(Float, nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)

    exercise: Mapped[Exercise] = relationship("Exercise")


class CheckInMeasurement(Base):
    __tablename__ = "check_in_measurements"
    __table_args__ = (UniqueConstraint("user_id", "entry_date", name="uq_check_in_user_date"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    entry_date: Mapped[date] = mapped_column(Date, nullable=False)
    weight: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    neck: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    waist: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    hips: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    steps: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class CustomCategory(Base):
    __tablename__ = "custom_categories"
    __table_args__ = (Index("ix_custom_categories_user_name", "user_id", "name"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    frequency: Mapped[str] = mapped_column(String(32), nullable=False, default="Daily")
    measurement_type: Mapped[str] = mapped_column(String(32), nullable=False, default="numeric")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)


class CustomMeasurement(Base):
    __tablename__ = "custom_measurements"
    __table_args__ = (Index("ix_custom_measurements_user_category", "user_id", "category_id", "entry_date"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    category_id: Mapped[int] = mapped_column(ForeignKey("custom_categories.id"), nullable=False)
    entry_date: Mapped[date] = mapped_column(Date, nullable=False)
    value: Mapped[float] = mapped_column(Float, nullable=False)
    entry_timestamp: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    category: Mapped[CustomCategory] = relationship("CustomCategory")


class WaterIntake(Base):
    __tablename__ = "water_intake"
    __table_args__ = (UniqueConstraint("user_id", "entry_date", name="uq_water_intake_user_date"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), nullable=False, index=True)
    entry_date: Mapped[date] = mapped_column(Date, nullable=False)
    glasses_consumed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
