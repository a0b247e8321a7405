# Shared asynchronous HTTP client for fetching attachment content
import httpx

httpx_client = httpx.AsyncClient()
