#!/usr/bin/env python3
"""Check a Pachka API token against the live API.

Usage: PACHKA_TOKEN=... python scripts/check_connection.py [chat_id]
"""

import asyncio
import os
import sys

import httpx

GREEN = '\033[0;32m'
RED = '\033[0;31m'
YELLOW = '\033[1;33m'
NC = '\033[0m'

passed = 0
failed = 0


def report_pass(msg):
    global passed
    print(f"{GREEN}PASS{NC} {msg}")
    passed += 1


def report_fail(msg, error=None):
    global failed
    print(f"{RED}FAIL{NC} {msg}")
    if error:
        print(f"      Error: {error}")
    failed += 1


async def main(chat_id: int | None) -> int:
    print("================================")
    print("Pachka Connection Checks")
    print("================================")
    print("")

    token = os.environ.get("PACHKA_TOKEN", "")
    if not token:
        report_fail("PACHKA_TOKEN environment variable is not set")
        return 1

    try:
        from pachka_stats.config import get_settings
        from pachka_stats.client import PachkaClient
        settings = get_settings()
        report_pass(f"Config loaded (API: {settings.pachka_api_url})")
    except Exception as e:
        report_fail("Config import", e)
        return 1

    async with httpx.AsyncClient(timeout=settings.http_timeout) as http:
        client = PachkaClient(token, http, settings)

        try:
            user = await client.get_current_user()
            report_pass(f"Token valid (owner: {user.first_name} {user.last_name})")
        except Exception as e:
            report_fail("Token validation", e)
            return 1

        try:
            users = await client.list_users()
            bots = sum(1 for u in users if u.bot)
            report_pass(f"User directory accessible ({len(users):,} users, {bots} bots)")
        except Exception as e:
            report_fail("User directory", e)

        try:
            chats = await client.list_chats()
            report_pass(f"Chats accessible ({len(chats):,} chats)")
            if chat_id is None and chats:
                chat_id = chats[0].id
        except Exception as e:
            report_fail("Chat listing", e)

        if chat_id is None:
            print(f"{YELLOW}SKIP{NC} No chat to sample messages from")
        else:
            try:
                messages = await client.list_messages(chat_id)
                report_pass(f"Messages of chat {chat_id} accessible ({len(messages):,} messages)")
                if messages:
                    readers = await client.get_readers(messages[0].id)
                    report_pass(f"Read receipts accessible ({len(readers)} readers of message {messages[0].id})")
            except Exception as e:
                report_fail(f"Messages of chat {chat_id}", e)

    print("")
    print("================================")
    print(f"Results: {GREEN}{passed} passed{NC}, {RED}{failed} failed{NC}")
    print("================================")

    return failed


if __name__ == "__main__":
    target_chat = int(sys.argv[1]) if len(sys.argv) > 1 else None
    exit_code = asyncio.run(main(target_chat))
    sys.exit(exit_code)
