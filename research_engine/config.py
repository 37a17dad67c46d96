from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Anthropic / OpenRouter
    anthropic_api_key: str = ""
    openrouter_api_key: str = ""
    openrouter_base_url: str = "https://openrouter.ai/api/v1"
    default_model: str = "claude-haiku-4-5-20251001"
    router_model: str = ""  # optional override for tier classification
    enricher_model: str = ""
    planner_model: str = "claude-sonnet-4-5-20250929"
    reflector_model: str = ""
    synthesis_model: str = "claude-sonnet-4-5-20250929"
    metadata_model: str = ""
    planner_thinking_budget: int = 4096
    synthesis_max_tokens: int = 4096

    # Pricing (USD per million tokens / per provider call)
    input_token_price_per_million: float = 3.0
    output_token_price_per_million: float = 15.0
    provider_call_price_usd: float = 0.0
    web_search_call_price_usd: float = 0.008

    # Providers
    ncbi_api_key: str = ""
    ncbi_email: str = ""
    tavily_api_key: str = ""
    brave_api_key: str = ""
    web_search_backend: str = "tavily"  # tavily | brave
    web_search_fallback_to_tavily: bool = True
    pubmed_timeout_seconds: float = 2.0
    preprint_timeout_seconds: float = 2.0
    trials_timeout_seconds: float = 2.0
    web_timeout_seconds: float = 1.0
    source_content_max_chars: int = 2000

    # Router
    router_tie_margin: float = 0.1
    history_excerpt_turns: int = 4

    # Multi-round research
    pipeline_timeout_seconds: float = 180.0
    max_cost_usd: float = 0.50
    max_rounds_ceiling: int = 4
    default_min_rounds: int = 2
    default_max_rounds: int = 4
    first_round_target_sources: int = 25
    later_round_target_sources: int = 15
    single_pass_target_sources: int = 10
    gap_acceptance_threshold: float = 0.85
    heuristic_min_sources: int = 15
    max_refined_queries: int = 3

    # Deduplication
    dedup_title_similarity_threshold: float = 0.9

    # Selection
    selector_min_relevance: float = 0.40
    selector_unreviewed_min_relevance: float = 0.55
    selector_max_age_years: int = 15
    selector_base_limit: int = 25
    selector_extended_limit: int = 30
    selector_high_quality_threshold: float = 0.70
    selector_token_budget: int = 16800
    selector_near_duplicate_threshold: float = 0.85

    # Synthesis
    synthesis_drain_grace_seconds: float = 5.0
    # Window synthesis still gets once gathering has used up the pipeline deadline
    synthesis_min_seconds: float = 30.0
    truncation_marker: str = "\n\n[response truncated]"

    # Citation verification
    citation_accurate_threshold: float = 0.72
    citation_nuance_threshold: float = 0.55

    # Embeddings
    embedding_backend: str = "hashing"  # hashing | local
    local_embed_model: str = "BAAI/bge-small-en-v1.5"
    embedding_dimension: int = 384

    # Sessions / recall
    session_store_dir: str = ".cache/sessions"
    session_autosave_every: int = 4
    session_inactivity_seconds: int = 1800
    session_token_ceiling: int = 150_000
    session_token_policy: str = "summarize_and_continue"  # summarize_and_continue | force_end
    session_topic_overlap_threshold: float = 0.2
    recall_title_weight: float = 4.0
    recall_topics_weight: float = 3.0
    recall_summary_weight: float = 2.0
    recall_messages_weight: float = 1.0
    recall_close_match_margin: float = 0.15
    recall_max_results: int = 5

    # App
    cors_origins: str = "http://localhost:3000"
    app_log_level: str = "INFO"
    noisy_log_level: str = "WARNING"
    log_dir: str = "logs"

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    @property
    def cors_origin_list(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",")]


settings = Settings()
