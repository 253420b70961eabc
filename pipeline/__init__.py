"""
Air Quality Pipeline — ingestion and analytics package.

Components:
    - ingestion: OpenAQ v3 connector, fixture provider and validation
    - orchestration: three-stage importer with bounded retry
    - analytics: pollution ranking, windowed averages, latest by city
    - service: facade wiring settings, provider, store and analytics
"""
