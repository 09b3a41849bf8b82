import requests

# ✅ Your Firebase Function URL
FIREBASE_FUNCTION_URL = "https://europe-west4-family-alerts.cloudfunctions.net/evaluate_subject"

# ✅ Replace with an actual user id that belongs to a family
payload = {
    "userId": "REPLACE_WITH_UID",
    "previousLocation": {"latitude": 37.01, "longitude": -122.0},
    "currentLocation": {"latitude": 37.0, "longitude": -122.0},
    "previousBattery": 55,
    "currentBattery": 18,
}

# ✅ A Firebase ID token of that same user (the endpoint only accepts its own device)
ID_TOKEN = "REPLACE_WITH_ID_TOKEN"

headers = {
    "Content-Type": "application/json",
    "Authorization": f"Bearer {ID_TOKEN}",
}

if __name__ == "__main__":
    print("📡 Sending test request to Firebase function...")
    response = requests.post(FIREBASE_FUNCTION_URL, json=payload, headers=headers, timeout=30)

    print(f"🔄 HTTP Status Code: {response.status_code}")
    print(f"✅ Response: {response.text}")
