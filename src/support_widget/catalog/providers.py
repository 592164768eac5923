"""Provider (benefits) catalog: admin CRUD plus the client's read-only view."""

from __future__ import annotations

import uuid
from typing import Optional

from pydantic import ValidationError as PydanticValidationError

from support_widget.config import BucketsConfig
from support_widget.core.errors import (
    GatewayError,
    MutationResult,
    NotFoundError,
    SupportWidgetError,
    ValidationError,
)
from support_widget.error_log import ErrorLogger
from support_widget.gateway.base import ChangeEvent, Subscription
from support_widget.gateway.client import ServiceClient
from support_widget.log import get_logger
from support_widget.storage.models import Provider, ProviderInput, ProviderPatch, utc_now
from support_widget.sync.uploads import upload_provider_logo

logger = get_logger(__name__)

SEED_PROVIDERS: list[ProviderInput] = [
    ProviderInput(
        name="Mercado Livre",
        type="ecommerce",
        category="Varejo",
        description="Tudo o que você precisa com entrega rápida e segura.",
        cashback_percent=5.0,
        revenue_share_text="Parte do valor retorna para o fundo da sua comunidade.",
        link="https://www.mercadolivre.com.br",
    ),
    ProviderInput(
        name="Shopee",
        type="ecommerce",
        category="Varejo",
        description="Ofertas incríveis e cupons de frete grátis todos os dias.",
        cashback_percent=5.0,
        revenue_share_text="Ajude sua comunidade comprando na Shopee.",
        link="https://shopee.com.br",
    ),
    ProviderInput(
        name="Redoma Reformas",
        type="service",
        category="Manutenção",
        description="Serviços especializados de pintura e elétrica.",
        cashback_percent=5.0,
        revenue_share_text="Serviço premium com benefício direto para a comunidade.",
        link="#",
    ),
]


def filter_providers(providers: list[Provider], search: str = "", category: str = "all") -> list[Provider]:
    """Case-insensitive search over name and description, plus a category filter."""
    needle = search.strip().lower()
    return [
        p for p in providers
        if (not needle or needle in p.name.lower() or needle in p.description.lower())
        and (category == "all" or p.category == category)
    ]


def categories_of(providers: list[Provider]) -> list[str]:
    """Distinct categories in first-seen order."""
    return list(dict.fromkeys(p.category for p in providers))


class ProviderCatalog:
    """Provider list kept fresh by re-fetching on every change event.

    *client* decides what is visible: the master context sees every row, the
    public context only active ones.
    """

    def __init__(
        self,
        client: ServiceClient,
        *,
        buckets: BucketsConfig | None = None,
        error_log: ErrorLogger | None = None,
    ):
        self._client = client
        self._buckets = buckets or BucketsConfig()
        self._error_log = error_log
        self._providers: list[Provider] = []
        self._subscription: Subscription | None = None

    @property
    def providers(self) -> list[Provider]:
        return list(self._providers)

    def get(self, provider_id: str) -> Optional[Provider]:
        return next((p for p in self._providers if p.id == provider_id), None)

    def active(self) -> list[Provider]:
        return [p for p in self._providers if p.is_active]

    def filter(self, search: str = "", category: str = "all") -> list[Provider]:
        return filter_providers(self.active(), search, category)

    def categories(self) -> list[str]:
        return categories_of(self.active())

    # -- lifecycle --------------------------------------------------------

    async def start(self, seed: bool = False) -> None:
        self._subscription = await self._client.subscribe("providers", self._on_change)
        await self.load(seed=seed)

    async def stop(self) -> None:
        if self._subscription is not None:
            await self._subscription.close()
            self._subscription = None

    async def settle(self) -> None:
        if self._subscription is not None:
            await self._subscription.wait_idle()

    async def _on_change(self, event: ChangeEvent) -> None:
        logger.debug("provider_change", type=str(event.type))
        await self.refresh()

    async def refresh(self) -> None:
        try:
            rows = await self._client.select("providers", order_by="created_at")
        except GatewayError as e:
            logger.error("provider_fetch_failed", error=str(e))
            return
        self._providers = [Provider.from_row(r) for r in rows]

    async def load(self, seed: bool = False) -> list[Provider]:
        """Fetch the catalog; with *seed*, insert the starter set into an empty table."""
        await self.refresh()
        if seed and not self._providers:
            now = utc_now()
            rows = [
                {**p.to_row(), "id": uuid.uuid4().hex, "created_at": now, "updated_at": now}
                for p in SEED_PROVIDERS
            ]
            try:
                inserted = await self._client.insert("providers", rows)
            except GatewayError as e:
                logger.error("provider_seed_failed", error=str(e))
                return self.providers
            self._providers = [Provider.from_row(r) for r in inserted]
            logger.info("providers_seeded", count=len(inserted))
        return self.providers

    # -- admin mutations --------------------------------------------------

    async def add(self, data: ProviderInput | dict) -> MutationResult[Provider]:
        try:
            provider_in = data if isinstance(data, ProviderInput) else ProviderInput(**data)
        except PydanticValidationError as e:
            return MutationResult.failure(ValidationError(str(e)))
        now = utc_now()
        row = {**provider_in.to_row(), "id": uuid.uuid4().hex, "created_at": now, "updated_at": now}
        try:
            inserted = await self._client.insert("providers", row)
        except GatewayError as e:
            return await self._fail("add_provider", e)
        provider = Provider.from_row(inserted[0])
        self._merge(provider)
        logger.info("provider_added", provider_id=provider.id, name=provider.name)
        return MutationResult.success(provider)

    async def update(self, provider_id: str, patch: ProviderPatch | dict) -> MutationResult[Provider]:
        try:
            patch = patch if isinstance(patch, ProviderPatch) else ProviderPatch(**patch)
        except PydanticValidationError as e:
            return MutationResult.failure(ValidationError(str(e)))
        values = {**patch.to_row(), "updated_at": utc_now()}
        try:
            rows = await self._client.update("providers", values, eq={"id": provider_id})
        except GatewayError as e:
            return await self._fail("update_provider", e)
        if not rows:
            return await self._fail(
                "update_provider", NotFoundError(f"provider {provider_id} not found", table="providers")
            )
        provider = Provider.from_row(rows[0])
        self._merge(provider)
        return MutationResult.success(provider)

    async def delete(self, provider_id: str) -> MutationResult[bool]:
        try:
            deleted = await self._client.delete("providers", eq={"id": provider_id})
        except GatewayError as e:
            return await self._fail("delete_provider", e)
        self._providers = [p for p in self._providers if p.id != provider_id]
        logger.info("provider_deleted", provider_id=provider_id, deleted=deleted)
        return MutationResult.success(deleted > 0)

    async def toggle_active(self, provider_id: str) -> MutationResult[Provider]:
        provider = self.get(provider_id)
        if provider is None:
            return MutationResult.failure(
                NotFoundError(f"provider {provider_id} not found", table="providers")
            )
        return await self.update(provider_id, ProviderPatch(is_active=not provider.is_active))

    async def upload_logo(
        self, data: bytes | None, filename: str = "", existing_url: str | None = None
    ) -> MutationResult[Optional[str]]:
        try:
            url = await upload_provider_logo(
                self._client, self._buckets.provider_logos, data, filename, existing_url
            )
        except GatewayError as e:
            return await self._fail("upload_provider_logo", e)
        return MutationResult.success(url)

    def _merge(self, provider: Provider) -> None:
        for i, existing in enumerate(self._providers):
            if existing.id == provider.id:
                self._providers[i] = provider
                return
        self._providers.append(provider)

    async def _fail(self, op: str, error: SupportWidgetError) -> MutationResult:
        logger.error("catalog_mutation_failed", op=op, error=str(error), code=error.code)
        if self._error_log is not None:
            await self._error_log.log_exception(error, function_name=op)
        return MutationResult.failure(error)
