from __future__ import annotations

import asyncio
from dataclasses import replace

from google_auth_oauthlib.flow import InstalledAppFlow

from calbot.config.settings import get_settings
from calbot.services.google_calendar import SCOPES, TOKEN_URI, GoogleCalendarService

AUTH_URI = "https://accounts.google.com/o/oauth2/auth"


def main() -> None:
    settings = get_settings()
    if not settings.google_client_id or not settings.google_client_secret:
        raise SystemExit("GOOGLE_CLIENT_ID and GOOGLE_CLIENT_SECRET must be set")

    client_config = {
        "installed": {
            "client_id": settings.google_client_id,
            "client_secret": settings.google_client_secret,
            "auth_uri": AUTH_URI,
            "token_uri": TOKEN_URI,
            "redirect_uris": [f"http://localhost:{settings.google_oauth_port}/"],
        }
    }
    flow = InstalledAppFlow.from_client_config(client_config, SCOPES)
    credentials = flow.run_local_server(
        port=settings.google_oauth_port,
        prompt="consent",
        access_type="offline",
    )
    if not credentials.refresh_token:
        raise SystemExit("Google did not return a refresh token; revoke access and try again")

    print("Google authorisation succeeded. Add this line to your .env:")
    print(f"GOOGLE_REFRESH_TOKEN={credentials.refresh_token}")

    service = GoogleCalendarService(replace(settings, google_refresh_token=credentials.refresh_token))
    choices = asyncio.run(service.list_eligible_calendars())
    print("Calendars available to the bot:")
    for choice in choices:
        print(f" • {choice.summary} ({choice.id})")


if __name__ == "__main__":
    main()
