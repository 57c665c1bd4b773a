"""LINE Messaging API: webhook models, signature check and REST client."""
