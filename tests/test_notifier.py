from __future__ import annotations

import asyncio

from paybridge.services.notifier import DiscordNotifier

WEBHOOK = "https://discord.com/api/webhooks/1/token"


class TestDiscordNotifier:
    async def test_disabled_without_url(self):
        notifier = DiscordNotifier("")
        assert notifier.enabled is False
        assert notifier.notify("hello") is None

    async def test_delivers_embed(self, monkeypatch):
        notifier = DiscordNotifier(WEBHOOK)
        delivered = []

        async def deliver(embed):
            delivered.append(embed)

        monkeypatch.setattr(notifier, "_deliver", deliver)
        task = notifier.notify("New Purchase", "details", fields=[("Txn", "abc123"), ("Empty", "")])

        assert await task is True
        embed = delivered[0]
        assert embed.title == "New Purchase"
        assert [(field.name, field.value) for field in embed.fields] == [("Txn", "abc123"), ("Empty", "(empty)")]

    async def test_delivery_errors_are_swallowed(self, monkeypatch):
        notifier = DiscordNotifier(WEBHOOK)

        async def deliver(embed):
            raise ConnectionError("discord is down")

        monkeypatch.setattr(notifier, "_deliver", deliver)
        assert await notifier.notify("x") is False

    async def test_slow_delivery_times_out(self, monkeypatch):
        notifier = DiscordNotifier(WEBHOOK, timeout=0.05)

        async def deliver(embed):
            await asyncio.sleep(5)

        monkeypatch.setattr(notifier, "_deliver", deliver)
        assert await notifier.notify("x") is False

    async def test_notify_does_not_block_caller(self, monkeypatch):
        notifier = DiscordNotifier(WEBHOOK, timeout=1)
        started = asyncio.Event()
        release = asyncio.Event()

        async def deliver(embed):
            started.set()
            await release.wait()

        monkeypatch.setattr(notifier, "_deliver", deliver)
        task = notifier.notify("x")
        assert not task.done()

        await started.wait()
        release.set()
        assert await task is True

    async def test_aclose_does_not_wait_forever(self, monkeypatch):
        notifier = DiscordNotifier(WEBHOOK, timeout=0.05)

        async def deliver(embed):
            await asyncio.sleep(60)

        monkeypatch.setattr(notifier, "_deliver", deliver)
        task = notifier.notify("x")
        await asyncio.wait_for(notifier.aclose(), timeout=2)
        await asyncio.gather(task, return_exceptions=True)
        assert task.done()

    async def test_aclose_without_pending_tasks(self):
        await DiscordNotifier(WEBHOOK).aclose()
