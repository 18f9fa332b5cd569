from __future__ import annotations

import argparse
import asyncio
from dataclasses import dataclass

from appforge.core.logging import configure_logging
from appforge.domain.schema import CollectionSettings, CollectionSpec, FieldDef, RelationDef
from appforge.persistence.db import SessionLocal, engine, init_models
from appforge.persistence.repos import tenants as tenants_repo
from appforge.services import collections, identity, items
from appforge.services.access_policy import Caller
from appforge.services.auth.roles import Role


DEMO_TENANT_ID = "demo-app"
DEMO_TENANT_NAME = "Demo Task Tracker"
DEMO_ADMIN_EMAIL = "admin@appforge.dev"
DEMO_ADMIN_PASSWORD = "demo-password"


@dataclass(frozen=True)
class DemoCollection:
    # Schema and settings applied before any demo rows are written.
    name: str
    spec: CollectionSpec


def build_demo_collections() -> tuple[DemoCollection, ...]:
    return (
        DemoCollection(
            name="projects",
            spec=CollectionSpec(
                schema=[
                    FieldDef(name="name", type="text", required=True, max_length=120),
                    FieldDef(name="status", type="enum", enum_values=["active", "paused", "done"]),
                ],
                settings=CollectionSettings(admin_write_only=True),
                description="Projects visible to every member",
            ),
        ),
        DemoCollection(
            name="tasks",
            spec=CollectionSpec(
                schema=[
                    FieldDef(name="title", type="text", required=True, min_length=1),
                    FieldDef(name="status", type="enum", enum_values=["todo", "doing", "done"]),
                    FieldDef(name="due", type="date"),
                    FieldDef(name="project_id", type="text", relation=RelationDef(collection="projects")),
                ],
                settings=CollectionSettings(owner_write_only=True),
                description="Tasks editable by their owner",
            ),
        ),
    )


async def seed(tenant_id: str) -> None:
    # Idempotent for the tenant and schema; rows are appended on every run.
    await init_models()
    async with SessionLocal() as session:
        if await tenants_repo.get_tenant(session, tenant_id) is None:
            await tenants_repo.create_tenant(session, tenant_id=tenant_id, name=DEMO_TENANT_NAME)
            await session.commit()
            session_payload = await identity.signup(
                session,
                tenant_id=tenant_id,
                email=DEMO_ADMIN_EMAIL,
                password=DEMO_ADMIN_PASSWORD,
                display_name="Demo Admin",
            )
            print(f"admin_token={session_payload['token']}")

        for demo in build_demo_collections():
            await collections.update_schema(session, tenant_id=tenant_id, name=demo.name, spec=demo.spec)

        admin = Caller(identity_id=None, role=Role.ADMIN)
        project = await items.create_item(
            session,
            tenant_id=tenant_id,
            collection_name="projects",
            data={"name": "Launch", "status": "active"},
            caller=admin,
        )
        for title in ("Write copy", "Ship build"):
            await items.create_item(
                session,
                tenant_id=tenant_id,
                collection_name="tasks",
                data={"title": title, "status": "todo", "project_id": project["id"]},
                caller=admin,
            )
    await engine.dispose()
    print(f"seeded_tenant={tenant_id}")


def main() -> None:
    parser = argparse.ArgumentParser(description="Seed a demo app with collections and items")
    parser.add_argument("--tenant", default=DEMO_TENANT_ID)
    args = parser.parse_args()
    configure_logging()
    asyncio.run(seed(args.tenant))


if __name__ == "__main__":
    main()
