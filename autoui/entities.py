# autoui/entities.py
from sqlalchemy import String, Text
from sqlalchemy.orm import Mapped, declarative_base, mapped_column

Base = declarative_base()

# Rows whose path starts with this prefix hold JSON-encoded atom values,
# every other row is a virtual source file.
ATOM_KEY_PREFIX = "__atom:"


class VfsRow(Base):
    __tablename__ = "vfs_rows"

    path: Mapped[str] = mapped_column(String(1024), primary_key=True)
    text: Mapped[str] = mapped_column(Text, nullable=False, default="")

    def __repr__(self) -> str:
        return f"VfsRow(path={self.path!r}, chars={len(self.text or '')})"


def is_atom_key(path: str) -> bool:
    return bool(path) and path.startswith(ATOM_KEY_PREFIX)


def atom_storage_key(key: str) -> str:
    return f"{ATOM_KEY_PREFIX}{key}"
