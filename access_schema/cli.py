"""accessSchema CLI tool (accessctl)."""

from datetime import datetime
from typing import Optional

import typer

app = typer.Typer(name="accessctl", help="accessSchema role and permission management")
db_app = typer.Typer(help="Database management commands")
app.add_typer(db_app, name="db")


def _session():
    from access_schema.db.session import SessionLocal
    return SessionLocal()


def _schema():
    from access_schema.core.container import get_access_schema
    return get_access_schema()


@db_app.command("create")
def db_create():
    """Create the MySQL database if it doesn't exist."""
    import pymysql
    from sqlalchemy.engine import make_url
    from access_schema.core.config import settings

    url = make_url(settings.DATABASE_URL)
    conn = pymysql.connect(
        host=url.host or "localhost",
        port=url.port or 3306,
        user=url.username,
        password=url.password or "",
    )
    try:
        cursor = conn.cursor()
        cursor.execute(
            f"CREATE DATABASE IF NOT EXISTS `{url.database}` CHARACTER SET utf8mb4 COLLATE utf8mb4_unicode_ci"
        )
        conn.commit()
        typer.echo(f"Database '{url.database}' created (or already exists)")
    finally:
        conn.close()


@db_app.command("init")
def db_init():
    """Create the roles, user_roles and audit_log tables."""
    from access_schema.db.session import init_db

    init_db()
    typer.echo("Tables created")


@app.command("register")
def register(
    path: str = typer.Argument(..., help="Role path, e.g. 'Chronicles/MCKN/HST'"),
):
    """Register a role path, creating any missing ancestors."""
    db = _session()
    try:
        role_id = _schema().tree.register_path(db, path.split("/"))
    finally:
        db.close()
    typer.echo(f"Registered {path} (id {role_id})")


@app.command("grant")
def grant(
    user_id: int = typer.Argument(..., help="Principal id"),
    role_path: str = typer.Argument(..., help="Registered role path"),
    expires: Optional[datetime] = typer.Option(None, help="Expiry (UTC)"),
):
    """Assign a role to a principal."""
    db = _session()
    try:
        added = _schema().assignments.add_role(db, user_id, role_path, expires_at=expires)
    finally:
        db.close()
    if not added:
        typer.echo(f"Role {role_path} not granted to user {user_id} (already held or rejected)")
        raise typer.Exit(code=1)
    typer.echo(f"Granted {role_path} to user {user_id}")


@app.command("revoke")
def revoke(
    user_id: int = typer.Argument(..., help="Principal id"),
    role_path: str = typer.Argument(..., help="Role path"),
):
    """Remove a role from a principal."""
    db = _session()
    try:
        _schema().assignments.remove_role(db, user_id, role_path)
    finally:
        db.close()
    typer.echo(f"Revoked {role_path} from user {user_id}")


@app.command("roles")
def roles(
    user_id: int = typer.Argument(..., help="Principal id"),
    inherited: bool = typer.Option(False, help="Include registered ancestors"),
):
    """List the roles of a principal."""
    db = _session()
    try:
        assignments = _schema().assignments
        paths = (
            assignments.get_roles_with_inheritance(db, user_id)
            if inherited else assignments.get_roles(db, user_id)
        )
    finally:
        db.close()
    for path in paths:
        typer.echo(f"  {path}")


@app.command("check")
def check(
    user_id: int = typer.Argument(..., help="Principal id"),
    role_path: str = typer.Argument(..., help="Target path or wildcard pattern"),
    children: bool = typer.Option(False, help="Let deeper held roles grant the target"),
    wildcards: bool = typer.Option(False, help="Treat * and ** as wildcards"),
):
    """Evaluate a permission check and print the decision."""
    db = _session()
    try:
        decision = _schema().permissions.evaluate(db, user_id, role_path, children, wildcards)
    finally:
        db.close()
    verdict = "GRANTED" if decision.granted else "DENIED"
    typer.echo(f"{verdict} ({decision.reason}{', ' + decision.match_type if decision.match_type else ''})")
    if not decision.granted:
        raise typer.Exit(code=1)


@app.command("tree")
def tree(
    max_depth: Optional[int] = typer.Option(None, help="Levels to show"),
):
    """Print the role tree."""
    db = _session()
    try:
        nodes = _schema().tree.get_tree(db, max_depth=max_depth)
    finally:
        db.close()

    def show(branch, indent=0):
        for node in branch:
            typer.echo(f"{'  ' * indent}{node['name']}  [{node['full_path']}]")
            show(node["children"], indent + 1)

    show(nodes)


@app.command("cleanup")
def cleanup():
    """Expire past-due assignments and purge old audit records."""
    db = _session()
    try:
        schema = _schema()
        expired = schema.assignments.cleanup_expired(db)
        purged = schema.audit.cleanup_logs(db)
    finally:
        db.close()
    typer.echo(f"Expired {expired} assignments, deleted {purged} audit records")


@app.command("serve")
def serve(
    host: str = typer.Option("0.0.0.0", help="Host"),
    port: int = typer.Option(8000, help="Port"),
    reload: bool = typer.Option(False, help="Auto-reload"),
):
    """Start the FastAPI server."""
    import uvicorn
    uvicorn.run("access_schema.main:app", host=host, port=port, reload=reload)


if __name__ == "__main__":
    app()
