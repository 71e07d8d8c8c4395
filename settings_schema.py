from pydantic import BaseModel, Field, ValidationError


class SettingsSchema(BaseModel):
    default_rest_seconds: int = Field(60, ge=0)
    pacing_delay_seconds: float = Field(2.0, ge=0)
    rest_extend_seconds: int = Field(30, gt=0)
    submit_attempts: int = Field(3, ge=1)
    submit_backoff_seconds: float = Field(0.5, ge=0)
    api_base_url: str = "http://localhost:8000"
    db_path: str = "workout.db"
    user_id: int = 1


def validate_settings(data: dict) -> None:
    try:
        SettingsSchema(**data)
    except ValidationError as e:
        raise ValueError(str(e))
