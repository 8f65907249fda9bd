from dataclasses import dataclass, field
from enum import Enum


class Framework(str, Enum):
    UNKNOWN = "unknown"
    EXPRESS = "express"
    NESTJS = "nestjs"
    NEXTJS = "nextjs"
    REACT = "react"
    VUE = "vue"
    NUXT = "nuxt"
    LARAVEL = "laravel"


class DatabaseEngine(str, Enum):
    NONE = "none"
    POSTGRESQL = "postgresql"
    MYSQL = "mysql"
    MONGODB = "mongodb"
    SQLITE = "sqlite"


@dataclass
class ProjectProfile:
    """What the deploy steps need to know about a checkout."""

    framework: Framework = Framework.UNKNOWN
    app_type: str = "nodejs"  # nodejs or laravel
    uses_typescript: bool = False
    has_database_orm: bool = False
    default_port: int = 3000
    requires_env_file: bool = False
    requires_database: bool = False
    database_engine: DatabaseEngine = DatabaseEngine.NONE
    example_env_vars: dict[str, str] = field(default_factory=dict)
    scripts: dict[str, str] = field(default_factory=dict)
    main_file: str = ""
    package_manager: str = "npm"
    has_lockfile: bool = False
    node_version: int | None = None
    has_migrations: bool = False

    def summary(self) -> str:
        parts = [self.framework.value]
        if self.uses_typescript:
            parts.append("typescript")
        if self.has_database_orm:
            parts.append("prisma")
        if self.database_engine is not DatabaseEngine.NONE:
            parts.append(self.database_engine.value)
        return ", ".join(parts)
