"""Seed a demo memoir project against a running server.

    python -m mabel.seed --base-url http://localhost:8000 --email demo@example.com --password secret123

Registers (or logs in) the user, creates a project and interviewee, creates
module 1, waits for its questions, answers them, requests a chapter and
waits until it is written.
"""
from __future__ import annotations

import argparse
import asyncio
import logging
import sys

import httpx

from mabel.services.polling import ModuleStatusPoller, PollError

logger = logging.getLogger("mabel.seed")

SAMPLE_ANSWERS = [
    "We lived in a small brick house at the end of Maple Street, and the kitchen always smelled of bread.",
    "My father worked at the mill, and every Friday he brought home a bag of peppermints for us to share.",
    "School was a long walk through the fields. In winter we wore two pairs of socks and still froze.",
    "The summer I turned twelve we drove to the coast, and I saw the ocean for the first time.",
    "My mother sang while she worked. I still hum her songs when I am cooking.",
    "I met your grandmother at a church dance. She stepped on my foot and laughed about it for fifty years.",
]


def _data(r: httpx.Response) -> dict:
    if r.status_code >= 400:
        try:
            message = r.json().get("error") or r.json().get("detail")
        except ValueError:
            message = r.text
        raise SystemExit(f"{r.request.method} {r.request.url.path} failed ({r.status_code}): {message}")
    return r.json()


async def _login(client: httpx.AsyncClient, email: str, password: str) -> None:
    r = await client.post("/auth/register", json={"email": email, "password": password, "username": email.split("@")[0]})
    if r.status_code not in (201, 400):
        _data(r)
    r = await client.post("/auth/jwt/login", data={"username": email, "password": password})
    if r.status_code >= 400:
        raise SystemExit(f"Login failed ({r.status_code})")


async def seed(base_url: str, email: str, password: str, *, answers: int, interval: float, attempts: int) -> int:
    async with httpx.AsyncClient(base_url=base_url, timeout=60) as client:
        await _login(client, email, password)

        project = _data(await client.post("/api/projects", json={"title": "The Story of Eleanor"}))["data"]
        pid = project["id"]
        _data(await client.post(f"/api/projects/{pid}/interviewee", json={
            "name": "Eleanor",
            "relationship": "Grandmother",
            "birthYear": 1958,
            "generation": "Baby Boomer",
            "topics": ["childhood", "family", "work"],
        }))
        logger.info("project %s created", pid)

        poller = ModuleStatusPoller(client, pid)
        created = _data(await client.post(f"/api/projects/{pid}/modules", json={"theme": "Growing Up"}))
        mid = created["data"]["id"]
        await poller.wait_for_module(
            mid, ("QUESTIONS_GENERATED", "IN_PROGRESS"), max_attempts=attempts, interval=interval
        )

        module = _data(await client.get(f"/api/projects/{pid}/modules/{mid}"))["data"]
        questions = module["questions"][:answers]
        for i, q in enumerate(questions):
            _data(await client.patch(
                f"/api/projects/{pid}/modules/{mid}/questions/{q['id']}",
                json={"response": SAMPLE_ANSWERS[i % len(SAMPLE_ANSWERS)]},
            ))
        logger.info("answered %s/%s questions", len(questions), len(module["questions"]))

        _data(await client.post(f"/api/projects/{pid}/modules/{mid}/chapter/generate", json={
            "narrativePerson": "first-person", "narrativeTone": "warm", "narrativeStyle": "descriptive",
        }))
        await poller.wait_for_module(mid, "CHAPTER_GENERATED", max_attempts=attempts, interval=interval)

        chapter = _data(await client.get(f"/api/projects/{pid}/modules/{mid}/chapter"))["data"]
        logger.info("chapter v%s ready (%s words)", chapter["version"], chapter["wordCount"])
        return pid


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Seed a demo Mabel project")
    parser.add_argument("--base-url", default="http://localhost:8000")
    parser.add_argument("--email", required=True)
    parser.add_argument("--password", required=True)
    parser.add_argument("--answers", type=int, default=8, help="questions to answer before generating")
    parser.add_argument("--interval", type=float, default=2.0)
    parser.add_argument("--attempts", type=int, default=90)
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(levelname)s %(name)s: %(message)s")
    try:
        pid = asyncio.run(seed(
            args.base_url, args.email, args.password,
            answers=args.answers, interval=args.interval, attempts=args.attempts,
        ))
    except PollError as e:
        logger.error("%s", e)
        return 1
    print(f"Seeded project {pid}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
