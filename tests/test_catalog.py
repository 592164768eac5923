import pytest

from support_widget.catalog.providers import SEED_PROVIDERS, ProviderCatalog, categories_of, filter_providers
from support_widget.core.errors import AuthorizationError, NotFoundError, ValidationError
from support_widget.storage.models import Provider, ProviderPatch


@pytest.mark.asyncio
async def test_load_seeds_empty_catalog_once(service):
    catalog = ProviderCatalog(service)

    first = await catalog.load(seed=True)
    again = await ProviderCatalog(service).load(seed=True)

    assert [p.name for p in first] == [p.name for p in SEED_PROVIDERS]
    assert len(again) == len(SEED_PROVIDERS)


@pytest.mark.asyncio
async def test_crud_and_toggle(service):
    catalog = ProviderCatalog(service)
    await catalog.load()

    added = await catalog.add({"name": "Padaria", "type": "service", "category": "Food", "cashback_percent": 2})
    provider = added.unwrap()
    assert provider.is_active

    toggled = (await catalog.toggle_active(provider.id)).unwrap()
    assert toggled.is_active is False
    assert toggled.updated_at >= provider.updated_at

    renamed = (await catalog.update(provider.id, ProviderPatch(name="Padaria Sol"))).unwrap()
    assert renamed.name == "Padaria Sol"
    assert renamed.category == "Food"

    assert (await catalog.delete(provider.id)).value is True
    assert catalog.get(provider.id) is None
    assert isinstance((await catalog.toggle_active(provider.id)).error, NotFoundError)
    assert isinstance((await catalog.update("nope", {"name": "x"})).error, NotFoundError)


@pytest.mark.asyncio
async def test_invalid_input_is_rejected_before_backend(service):
    catalog = ProviderCatalog(service)

    negative = await catalog.add({"name": "X", "cashback_percent": -1})
    nameless = await catalog.add({"name": ""})

    assert isinstance(negative.error, ValidationError)
    assert isinstance(nameless.error, ValidationError)
    assert await service.select("providers") == []


@pytest.mark.asyncio
async def test_public_catalog_sees_only_active_and_follows_changes(service, make_browser):
    admin = ProviderCatalog(service)
    await admin.load(seed=True)
    browser = make_browser("client")
    public = ProviderCatalog(browser.contexts.public)
    await public.start()
    assert len(public.providers) == 3
    assert public.categories() == ["Varejo", "Manutenção"]

    await admin.add({"name": "Padaria", "category": "Food"})
    await public.settle()
    assert "Padaria" in [p.name for p in public.providers]

    # Deactivation reaches the anonymous viewer as a removal.
    shopee = next(p for p in admin.providers if p.name == "Shopee")
    await admin.toggle_active(shopee.id)
    await public.settle()
    assert "Shopee" not in [p.name for p in public.providers]
    assert "Shopee" not in [p.name for p in public.filter("shop")]
    await public.stop()


@pytest.mark.asyncio
async def test_public_context_cannot_write(make_browser):
    browser = make_browser("client")
    catalog = ProviderCatalog(browser.contexts.public)

    result = await catalog.add({"name": "Sneaky"})

    assert isinstance(result.error, AuthorizationError)


@pytest.mark.asyncio
async def test_logo_upload_keeps_existing_url_without_data(service):
    catalog = ProviderCatalog(service)

    kept = await catalog.upload_logo(None, "", "https://cdn.example/logo.png")
    uploaded = await catalog.upload_logo(b"\x89PNG", "brand.PNG")

    assert kept.value == "https://cdn.example/logo.png"
    assert "/provider-logos/logos/" in uploaded.value
    assert uploaded.value.endswith(".png")


def _provider(name: str, category: str, description: str = "") -> Provider:
    return Provider(
        id=name, name=name, type="other", category=category, description=description,
        cashback_percent=1.0, revenue_share_text="", link="#",
    )


def test_filter_and_categories():
    providers = [
        _provider("Mercado Livre", "Varejo", "Entrega rápida"),
        _provider("Shopee", "Varejo", "Cupons"),
        _provider("Redoma", "Manutenção", "Pintura e elétrica"),
    ]

    assert [p.name for p in filter_providers(providers, "ENTREGA")] == ["Mercado Livre"]
    assert [p.name for p in filter_providers(providers, "", "Manutenção")] == ["Redoma"]
    assert filter_providers(providers, "cupons", "Manutenção") == []
    assert categories_of(providers) == ["Varejo", "Manutenção"]
