class CampaignError(Exception):
    """Bazowy błąd procesu kampanii (zwrot + restock)."""


class ShopNotFound(CampaignError):
    def __init__(self, shop_domain: str):
        self.shop_domain = shop_domain
        super().__init__(f"Shop {shop_domain} not found. Please install the app first.")


class OrderFetchFailed(CampaignError):
    pass


class PreconditionFailed(CampaignError):
    pass


class CampaignAlreadyCompleted(PreconditionFailed):
    pass


class RefundFailed(CampaignError):
    pass


class NoLocationFound(CampaignError):
    pass


class RestockFailed(CampaignError):
    pass


class ShopCredentialsInvalid(ShopNotFound):
    """Zapisany token sklepu nie daje się odszyfrować (np. zmiana ENCRYPTION_KEY)."""

    def __init__(self, shop_domain: str):
        self.shop_domain = shop_domain
        CampaignError.__init__(
            self,
            f"Stored credentials for shop {shop_domain} cannot be decrypted. Please reinstall the app.",
        )


class ConfigurationError(Exception):
    pass
