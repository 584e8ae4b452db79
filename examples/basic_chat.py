"""Basic example: health, models, one non-streamed chat, one upload."""

from openchatmobile import ChatClient

client = ChatClient()

# Check server health
print("Health:", client.health())

# Model files next to the server
for model in client.list_models():
    print(f"Model: {model['name']} ({model['sizeMB']} MB)")

# Blocking chat
result = client.chat("User: The meaning of life is\nAssistant:", max_tokens=64, temperature=0.7)
print(f"\n--- Generated ({result['tokens_used']} tokens) ---")
print(result["response"])

# Upload preview
preview = client.upload("notes.txt", b"remember the milk")
print("Upload:", preview["filename"], preview["size"], "chars")

client.close()
