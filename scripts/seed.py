"""Seed script to populate database with a demo chat workspace."""

import asyncio
import sys

sys.path.insert(0, ".")

from sqlalchemy import select

from app.db import get_db_context, init_db
from app.models import ChatRoom
from app.services.chat_store import ChatStore, ChatUser

WORKSPACE_ID = "acme-corp"

alice = ChatUser("alice", "Alice Johnson", workspace_id=WORKSPACE_ID)
bob = ChatUser("bob", "Bob Smith", workspace_id=WORKSPACE_ID)
carol = ChatUser("carol", "Carol Williams", workspace_id=WORKSPACE_ID)


async def seed_database():
    """Seed the database with sample data."""
    await init_db()

    async with get_db_context() as session:
        # Check if already seeded
        existing = await session.execute(
            select(ChatRoom.id).where(ChatRoom.workspace_id == WORKSPACE_ID).limit(1)
        )
        if existing.scalar_one_or_none():
            print("Database already seeded. Skipping.")
            return

        print("Seeding database...")
        store = ChatStore(session)

        general = await store.create_default_rooms(WORKSPACE_ID, alice.user_id)
        for user in (bob, carol):
            await store.add_user_to_default_rooms(WORKSPACE_ID, user.user_id)
        print(f"Created room: {general.name}")

        launch = await store.create_room(
            WORKSPACE_ID,
            alice,
            "Launch Planning",
            description="Coordination for the spring release",
            participants=[bob.user_id],
        )
        print(f"Created room: {launch.name}")

        direct, _ = await store.get_or_create_direct_room(WORKSPACE_ID, bob, carol.user_id)
        print(f"Created direct room: {direct.name}")

        welcome = await store.create_message(general.id, alice, "Welcome to the workspace chat!")
        await store.create_message(general.id, bob, "Thanks, glad to be here.", reply_to_id=welcome.id)
        await store.toggle_reaction(welcome.id, carol.user_id, carol.user_name, "👋")
        await store.create_message(launch.id, alice, "Kickoff notes are in the shared drive.")
        await store.create_message(direct.id, carol, "Do you have a minute to review the copy?")
        await store.mark_read(general.id, carol.user_id)
        print("Added demo messages")

    print("\nDatabase seeded successfully!")
    print(f"\nWorkspace: {WORKSPACE_ID}")
    print("Demo users (send as X-User-Id): alice, bob, carol")


if __name__ == "__main__":
    asyncio.run(seed_database())
