"""
Runtime detection.

Classifies a checkout by reading its manifest, lockfiles, ORM schema and env
files. Nothing here writes to disk.
"""

import json
import re
from pathlib import Path

from site_manager.envfile import read_env_file
from site_manager.errors import PreconditionError, ValidationError
from site_manager.profile import DatabaseEngine, Framework, ProjectProfile

# First match wins
FRAMEWORK_PACKAGES: list[tuple[str, Framework]] = [
    ("@nestjs/core", Framework.NESTJS),
    ("next", Framework.NEXTJS),
    ("express", Framework.EXPRESS),
    ("react", Framework.REACT),
    ("vue", Framework.VUE),
    ("nuxt", Framework.NUXT),
]

ENV_FILE_FRAMEWORKS = {Framework.NESTJS, Framework.NEXTJS, Framework.EXPRESS}

DRIVER_PACKAGES: list[tuple[str, DatabaseEngine]] = [
    ("pg", DatabaseEngine.POSTGRESQL),
    ("postgres", DatabaseEngine.POSTGRESQL),
    ("postgresql", DatabaseEngine.POSTGRESQL),
    ("mysql", DatabaseEngine.MYSQL),
    ("mysql2", DatabaseEngine.MYSQL),
    ("mongodb", DatabaseEngine.MONGODB),
    ("mongoose", DatabaseEngine.MONGODB),
    ("sqlite3", DatabaseEngine.SQLITE),
    ("sqlite", DatabaseEngine.SQLITE),
    ("better-sqlite3", DatabaseEngine.SQLITE),
]

URL_SCHEMES: list[tuple[str, DatabaseEngine]] = [
    ("postgresql://", DatabaseEngine.POSTGRESQL),
    ("postgres://", DatabaseEngine.POSTGRESQL),
    ("mysql://", DatabaseEngine.MYSQL),
    ("mongodb://", DatabaseEngine.MONGODB),
    ("mongodb+srv://", DatabaseEngine.MONGODB),
    ("file:", DatabaseEngine.SQLITE),
    ("sqlite:", DatabaseEngine.SQLITE),
]

LOCKFILES = [
    ("pnpm-lock.yaml", "pnpm"),
    ("yarn.lock", "yarn"),
    ("package-lock.json", "npm"),
    ("npm-shrinkwrap.json", "npm"),
]

LARAVEL_CONNECTIONS = {
    "pgsql": DatabaseEngine.POSTGRESQL,
    "mysql": DatabaseEngine.MYSQL,
    "mariadb": DatabaseEngine.MYSQL,
    "sqlite": DatabaseEngine.SQLITE,
}

DATABASE_ALIASES = {
    "postgresql": DatabaseEngine.POSTGRESQL,
    "postgres": DatabaseEngine.POSTGRESQL,
    "pg": DatabaseEngine.POSTGRESQL,
    "mysql": DatabaseEngine.MYSQL,
    "mariadb": DatabaseEngine.MYSQL,
}

SCHEMA_PROVIDERS = {
    "postgresql": DatabaseEngine.POSTGRESQL,
    "postgres": DatabaseEngine.POSTGRESQL,
    "mysql": DatabaseEngine.MYSQL,
    "sqlite": DatabaseEngine.SQLITE,
    "mongodb": DatabaseEngine.MONGODB,
}

DATASOURCE_BLOCK = re.compile(r"datasource\s+\w+\s*\{(?P<body>[^}]*)\}", re.S)
PROVIDER = re.compile(r'provider\s*=\s*"(?P<provider>[^"]+)"')


def detect_node_version(app_dir: Path) -> int | None:
    """Checks .nvmrc, .node-version, and package.json engines."""
    for filename in [".nvmrc", ".node-version"]:
        version_file = app_dir / filename
        if version_file.exists():
            content = version_file.read_text().strip().lstrip("v")
            try:
                return int(content.split(".")[0])
            except ValueError:
                pass

    package_json = app_dir / "package.json"
    if package_json.exists():
        try:
            data = json.loads(package_json.read_text())
            node_constraint = data.get("engines", {}).get("node", "")
            match = re.search(r"(\d+)", node_constraint)
            if match:
                return int(match.group(1))
        except (json.JSONDecodeError, ValueError, AttributeError):
            pass

    return None


def read_manifest(app_dir: Path) -> dict:
    manifest = app_dir / "package.json"
    if not manifest.exists():
        raise PreconditionError(f"No package.json found in {app_dir}")
    try:
        data = json.loads(manifest.read_text())
    except json.JSONDecodeError as e:
        raise ValidationError(f"Invalid package.json in {app_dir}: {e}") from e
    if not isinstance(data, dict):
        raise ValidationError(f"Invalid package.json in {app_dir}: expected an object")
    return data


def engine_from_schema(app_dir: Path) -> DatabaseEngine:
    schema = app_dir / "prisma" / "schema.prisma"
    if not schema.exists():
        return DatabaseEngine.NONE
    block = DATASOURCE_BLOCK.search(schema.read_text())
    if not block:
        return DatabaseEngine.NONE
    match = PROVIDER.search(block.group("body"))
    if not match:
        return DatabaseEngine.NONE
    return SCHEMA_PROVIDERS.get(match.group("provider"), DatabaseEngine.NONE)


def engine_from_url(url: str) -> DatabaseEngine:
    for scheme, engine in URL_SCHEMES:
        if url.startswith(scheme):
            return engine
    return DatabaseEngine.NONE


def engine_from_env_files(app_dir: Path) -> DatabaseEngine:
    for filename in [".env.example", ".env"]:
        url = read_env_file(app_dir / filename).get("DATABASE_URL", "")
        engine = engine_from_url(url)
        if engine is not DatabaseEngine.NONE:
            return engine
    return DatabaseEngine.NONE


def engine_from_drivers(packages: dict) -> DatabaseEngine:
    for package, engine in DRIVER_PACKAGES:
        if package in packages:
            return engine
    return DatabaseEngine.NONE


def example_env_vars(app_dir: Path) -> dict[str, str]:
    """The real .env wins over .env.example when both exist."""
    for filename in [".env", ".env.example"]:
        path = app_dir / filename
        if path.exists():
            return read_env_file(path)
    return {}


def detect_project(app_dir: Path) -> ProjectProfile:
    """Classify a Node.js checkout.

    :param app_dir: Checkout root containing package.json
    :return: Profile with framework, database and env requirements
    """
    manifest = read_manifest(app_dir)
    dependencies = manifest.get("dependencies") or {}
    dev_dependencies = manifest.get("devDependencies") or {}
    packages = {**dependencies, **dev_dependencies}

    profile = ProjectProfile()
    for package, framework in FRAMEWORK_PACKAGES:
        if package in packages:
            profile.framework = framework
            break

    profile.uses_typescript = "typescript" in packages or (app_dir / "tsconfig.json").exists()
    profile.scripts = {k: v for k, v in (manifest.get("scripts") or {}).items() if isinstance(v, str)}
    profile.main_file = manifest.get("main") or ""
    profile.node_version = detect_node_version(app_dir)

    for lockfile, manager in LOCKFILES:
        if (app_dir / lockfile).exists():
            profile.package_manager = manager
            profile.has_lockfile = True
            break

    if "@prisma/client" in dependencies or "prisma" in dev_dependencies:
        profile.has_database_orm = True
        profile.requires_database = True
        profile.has_migrations = (app_dir / "prisma" / "migrations").is_dir()

    profile.database_engine = engine_from_schema(app_dir)
    if profile.database_engine is DatabaseEngine.NONE:
        profile.database_engine = engine_from_env_files(app_dir)
    if profile.database_engine is DatabaseEngine.NONE:
        profile.database_engine = engine_from_drivers(packages)
    if profile.database_engine is not DatabaseEngine.NONE:
        profile.requires_database = True

    has_env_files = (app_dir / ".env").exists() or (app_dir / ".env.example").exists()
    profile.requires_env_file = has_env_files or profile.framework in ENV_FILE_FRAMEWORKS
    profile.example_env_vars = example_env_vars(app_dir)
    return profile


def detect_laravel_project(app_dir: Path, database: str | None = None) -> ProjectProfile:
    if not (app_dir / "artisan").exists():
        raise PreconditionError(f"Not a Laravel project: no artisan file in {app_dir}")

    profile = ProjectProfile(framework=Framework.LARAVEL, app_type="laravel", requires_env_file=True)
    profile.example_env_vars = read_env_file(app_dir / ".env.example")
    connection = profile.example_env_vars.get("DB_CONNECTION", "")
    profile.database_engine = LARAVEL_CONNECTIONS.get(connection, DatabaseEngine.NONE)
    profile.has_migrations = (app_dir / "database" / "migrations").is_dir()
    if database:
        apply_database_override(profile, database)
    profile.requires_database = profile.database_engine in (
        DatabaseEngine.POSTGRESQL,
        DatabaseEngine.MYSQL,
    )
    return profile


def detect_app_type(app_dir: Path) -> str:
    if (app_dir / "artisan").exists():
        return "laravel"
    if (app_dir / "package.json").exists():
        return "nodejs"
    raise PreconditionError(
        f"Cannot tell the project type of {app_dir}: no artisan or package.json. Use --type."
    )


def parse_database_name(name: str) -> DatabaseEngine:
    engine = DATABASE_ALIASES.get(name.lower())
    if engine is None:
        raise ValidationError(
            f"Unsupported database '{name}'. Use: postgresql, mysql"
        )
    return engine


def apply_database_override(profile: ProjectProfile, database: str | None):
    """Forces the engine chosen on the command line."""
    if not database:
        return
    profile.database_engine = parse_database_name(database)
    profile.requires_database = True
