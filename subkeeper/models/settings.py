"""Settings model"""

from sqlalchemy import Column, String, Text

from subkeeper.models import Base

# Setting keys
SETTING_TASK_RETENTION_DAYS = "task_retention_days"


class Settings(Base):
    """
    Key-value settings store.

    Holds configuration that can be changed at runtime and must survive
    restarts, such as the task retention window.
    """

    __tablename__ = "settings"

    key = Column(String(50), primary_key=True)
    value = Column(Text, nullable=False, default="")

    @classmethod
    def get(cls, db, key: str, default: str = "") -> str:
        """
        Get a setting value.

        Args:
            db: Database session.
            key: The setting key.
            default: Default value if not found.

        Returns:
            The stored value or default.
        """
        setting = db.get(cls, key)
        return setting.value if setting else default

    @classmethod
    def set(cls, db, key: str, value: str, commit: bool = True) -> None:
        """
        Insert or update a setting value.

        Args:
            db: Database session.
            key: The setting key.
            value: The value to store.
            commit: Whether to commit the transaction.
        """
        setting = db.get(cls, key)
        if setting:
            setting.value = value
        else:
            db.add(cls(key=key, value=value))
        if commit:
            db.commit()

    @classmethod
    def get_int(cls, db, key: str, default: int = 0) -> int:
        """Integer setting, falling back to default when missing or malformed."""
        value = cls.get(db, key, str(default))
        try:
            return int(value)
        except ValueError:
            return default

    @classmethod
    def set_int(cls, db, key: str, value: int, commit: bool = True) -> None:
        cls.set(db, key, str(value), commit=commit)
