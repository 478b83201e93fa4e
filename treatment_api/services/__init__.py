# Services package init
"""
Treatment AI Backend — Services Layer
======================================

What:  Business logic between routes (HTTP) and the database.
How:   Each service is a class with a module-level singleton; routes call the
       singleton, tests construct their own instance with mocks injected.

Service Inventory:
    - LLMService (abstract) / OpenAIService: chat, vision and embeddings
      behind a circuit breaker and tenacity retries
    - SessionService: bearer-token sessions
    - ConditionService / MedicationService: master catalogs and user lists
    - AccountLinkService: invitations, linked accounts, permission checks
    - TimelineService: health timeline entries and stats
    - ShareService: in-app chat sharing
    - FileService / UploadService: file validation, text extraction, analysis
    - TerraWebhookService: wearable connections and health data ingestion
    - VectorSearchService: pgvector semantic search over SDCO documents
    - MerlinClient: SDCO catalog lookups over HTTP
    - AnswerDetectionService: matches chat replies to diagnostic answers
"""
