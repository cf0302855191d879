from __future__ import annotations

import logging

from .gateway import ClientGateway
from .providers import CredentialCache, ProviderRegistry
from .router import RequestRouter
from .transcripts import TranscriptStore

logger = logging.getLogger(__name__)

TITLE_PROMPT = "Generate a title for a conversation based on the following message in 6 words or less."
MAX_TITLE_CHARS = 80


def clean_title(raw: str) -> str:
    title = raw.strip().splitlines()[0] if raw.strip() else ""
    title = title.strip().strip("\"'").strip()
    if title.endswith("."):
        title = title[:-1].rstrip()
    return title[:MAX_TITLE_CHARS]


class ConversationNamer:
    """Derives a short title for a new conversation; best-effort only."""

    def __init__(
        self,
        *,
        router: RequestRouter,
        providers: ProviderRegistry,
        credentials: CredentialCache,
        transcripts: TranscriptStore,
        gateway: ClientGateway,
        model: str = "gpt-4o-mini",
    ) -> None:
        self.router = router
        self.providers = providers
        self.credentials = credentials
        self.transcripts = transcripts
        self.gateway = gateway
        self.model = model

    async def name(self, conversation_id: str, connection_id: str, prompt: str) -> str | None:
        route = self.router.resolve(self.model)
        provider = self.providers.get(route.provider)
        api_key = self.credentials.get(provider.defn)
        messages = [
            {"role": "system", "content": TITLE_PROMPT},
            {"role": "user", "content": prompt},
        ]
        title = clean_title(await provider.complete(api_key, route.model, messages))
        if not title:
            logger.info("namer.empty_title conversation=%s", conversation_id)
            return None
        await self.transcripts.update_conversation(conversation_id, title=title)
        await self.gateway.send(connection_id, {"title": title})
        logger.info("namer.titled conversation=%s title=%r", conversation_id, title)
        return title
