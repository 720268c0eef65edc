from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    partner_base_url: str = "https://api.liteapi.travel/v3.0"
    partner_api_key: str = ""
    partner_timeout: float = 15.0
    partner_max_retries: int = 2
    partner_backoff_base: float = 1.0
    partner_detail_concurrency: int = 5
    partner_result_cap: int = 50
    partner_search_deadline: float = 18.0
    adapter_timeout: float = 20.0

    cache_backend: str = "memory"  # "memory" | "redis"
    redis_url: str = "redis://localhost:6379/0"
    cache_key_prefix: str = "hospedefacil:"
    cache_max_entries: int = 1000
    cache_op_timeout: float = 0.25
    cache_ttl_search: int = 600
    cache_ttl_detail: int = 3600
    cache_ttl_availability: int = 300
    coalesce_grace_seconds: float = 0.1

    default_page_size: int = 20
    max_page_size: int = 50

    pricing_base_markup: float = 15.0
    pricing_demand_level: str = "medium"
    pricing_competition: float = 0.3
    pricing_peak_months: list[int] = [12, 1, 2, 7]

    local_inventory_file: str = ""
    warm_up_destinations: list[str] = []
    log_level: str = "INFO"
