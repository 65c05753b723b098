import sys
import requests

url = "http://localhost:8080/jobs"
payload = {
    "source_language": "pl",
    "target_language": sys.argv[1] if len(sys.argv) > 1 else "de",
    "job_type": sys.argv[2] if len(sys.argv) > 2 else "i18n",
    "mode": "missing",
}

response = requests.post(url, json=payload)
print(response.json())
