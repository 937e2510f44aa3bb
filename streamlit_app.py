# streamlit_app.py
import os
import streamlit as st
import requests

API_URL = os.getenv("API_URL", "http://localhost:8000").rstrip("/")

st.set_page_config(page_title="ShareWheel", layout="wide")

DAYS = ["monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"]


def api(method, path, **kwargs):
    headers = {}
    if st.session_state.get("token"):
        headers["Authorization"] = f"Bearer {st.session_state['token']}"
    return requests.request(method, f"{API_URL}{path}", headers=headers, timeout=30, **kwargs)

def show_error(resp):
    try:
        detail = resp.json().get("detail", resp.text)
    except ValueError:
        detail = resp.text
    st.error(f"🚨 API error {resp.status_code}: {detail}")

def locate(label, key):
    """Address box that resolves to coordinates through the API geocoder."""
    address = st.text_input(label, key=f"{key}_address")
    if st.button(f"📍 Locate {label.lower()}", key=f"{key}_locate") and address.strip():
        resp = api("GET", "/api/geocode", params={"q": address})
        if resp.status_code == 200:
            st.session_state[key] = resp.json()
        else:
            show_error(resp)
    hit = st.session_state.get(key)
    if hit:
        st.caption(f"{hit['display_name']} ({hit['lat']:.5f}, {hit['lng']:.5f})")
    return hit


def sign_in_page():
    st.markdown("#### 🔐 Sign in")
    email    = st.text_input("Email")
    password = st.text_input("Password", type="password")
    col1, col2 = st.columns(2)
    with col1:
        if st.button("Sign in"):
            resp = api("POST", "/auth/signin", json={"email": email, "password": password})
            if resp.status_code != 200:
                show_error(resp)
                return
            st.session_state["token"] = resp.json()["access_token"]
            st.rerun()
    with col2:
        if st.button("Create account"):
            resp = api("POST", "/auth/signup", json={"email": email, "password": password})
            if resp.status_code != 201:
                show_error(resp)
                return
            st.success("✅ Account created, you can sign in now.")


def find_routes_page():
    st.markdown("#### 🔎 Find a route")
    pickup  = locate("Pickup", "search_pickup")
    dropoff = locate("Drop-off", "search_dropoff")

    if st.button("🔍 Find Routes"):
        if not pickup or not dropoff:
            st.error("⚠️ Please locate both pickup and drop-off first.")
            return
        resp = api("POST", "/api/routes/search", json={
            "pickup_lat": pickup["lat"], "pickup_lng": pickup["lng"],
            "dropoff_lat": dropoff["lat"], "dropoff_lng": dropoff["lng"],
        })
        if resp.status_code != 200:
            show_error(resp)
            return
        st.session_state["matches"] = resp.json().get("matches", [])

    matches = st.session_state.get("matches")
    if matches is None:
        return
    if not matches:
        st.warning("⚠️ No matching routes found. Try adjusting your locations.")
        return

    st.success(f"✅ Found {len(matches)} matching route(s)!")
    for route in matches:
        st.markdown("---")
        owner = route.get("owner") or {}
        st.markdown(f"**{route['pickup_address']} → {route['dropoff_address']}**")
        st.markdown(
            f"🕒 {route['departure_time']}  ·  💺 {route['seats_available']} seat(s)  ·  "
            f"💵 PKR {route['price_per_ride']}  ·  🚗 {owner.get('name') or 'Unknown'}"
        )
        st.caption(", ".join(d.capitalize() for d in route["active_days"]))
        seats = st.number_input("Seats", 1, route["seats_available"], 1, key=f"seats_{route['id']}")
        message = st.text_input("Message (optional)", key=f"msg_{route['id']}")
        if st.button("📨 Send Request", key=f"req_{route['id']}"):
            resp = api("POST", f"/api/routes/{route['id']}/requests",
                       json={"requested_seats": seats, "message": message})
            if resp.status_code == 201:
                st.success("✅ Request sent to the car owner.")
            else:
                show_error(resp)


def requests_page():
    st.markdown("#### 📬 Join requests")
    resp = api("GET", "/api/requests/incoming")
    if resp.status_code != 200:
        show_error(resp)
        return
    reqs = resp.json().get("requests", [])
    if not reqs:
        st.info("No requests yet.")
        return
    for r in reqs:
        st.markdown("---")
        st.markdown(
            f"**{r['requester'].get('name') or 'Unknown'}** wants {r['requested_seats']} seat(s) on "
            f"{r['route']['pickup_address']} → {r['route']['dropoff_address']}  ·  _{r['status']}_"
        )
        if r.get("message"):
            st.caption(r["message"])
        if r["status"] == "pending":
            col1, col2 = st.columns(2)
            for col, new_status in ((col1, "accepted"), (col2, "rejected")):
                with col:
                    if st.button(new_status.capitalize(), key=f"{new_status}_{r['id']}"):
                        upd = api("PATCH", f"/api/requests/{r['id']}", json={"status": new_status})
                        if upd.status_code == 200:
                            st.rerun()
                        show_error(upd)


def subscription_page():
    st.markdown("#### 💳 Subscription")
    resp = api("GET", "/api/subscription")
    if resp.status_code == 200 and resp.json().get("is_active"):
        sub = resp.json()["subscription"]
        st.success(f"✅ {sub['plan_type'].capitalize()} plan active until {sub['end_date'][:10]}")

    plans = requests.get(f"{API_URL}/plans", timeout=30).json()
    cols = st.columns(len(plans) or 1)
    for col, plan in zip(cols, plans):
        with col:
            st.markdown(f"##### {plan['name'].capitalize()}")
            st.markdown(f"PKR {plan['price_pkr']:,.0f} / {plan['months']} month(s)")
            st.caption(plan["description"])
            if st.button("Subscribe", key=f"plan_{plan['name']}"):
                out = api("POST", "/api/create-checkout-session",
                          json={"planType": plan["name"], "planPrice": plan["price_pkr"]})
                if out.status_code != 200:
                    show_error(out)
                else:
                    st.link_button("➡️ Continue to checkout", out.json()["url"])

    st.markdown("---")
    st.markdown("#### 🛣️ Register a route")
    pickup  = locate("Route pickup", "route_pickup")
    dropoff = locate("Route drop-off", "route_dropoff")
    departure = st.time_input("Departure time")
    days  = st.multiselect("Active days", DAYS, default=DAYS[:5])
    seats = st.number_input("Seats available", 1, 8, 3)
    price = st.number_input("Price per ride (PKR)", 0.0, value=500.0)
    if st.button("🚗 Register Route"):
        if not pickup or not dropoff:
            st.error("⚠️ Please locate both ends of the route first.")
            return
        resp = api("POST", "/api/routes", json={
            "pickup_address": pickup["display_name"], "dropoff_address": dropoff["display_name"],
            "pickup_lat": pickup["lat"], "pickup_lng": pickup["lng"],
            "dropoff_lat": dropoff["lat"], "dropoff_lng": dropoff["lng"],
            "departure_time": departure.strftime("%H:%M"),
            "active_days": days, "seats_available": int(seats), "price_per_ride": price,
        })
        if resp.status_code == 201:
            st.success("✅ Route registered successfully!")
        else:
            show_error(resp)


def main():
    st.markdown("<h1 style='text-align:center;'>🚗 ShareWheel</h1>", unsafe_allow_html=True)
    st.markdown("#### Share your daily commute and split the cost.")
    st.markdown("---")

    if not st.session_state.get("token"):
        sign_in_page()
        return

    mode = st.radio("Go to:", ["🔎 Find Routes", "📬 Requests", "💳 Drive & Subscribe"], horizontal=True)
    st.markdown("---")
    if mode == "🔎 Find Routes":
        find_routes_page()
    elif mode == "📬 Requests":
        requests_page()
    else:
        subscription_page()

if __name__ == "__main__":
    main()
