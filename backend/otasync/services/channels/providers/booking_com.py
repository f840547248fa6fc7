from __future__ import annotations

import base64
import xml.etree.ElementTree as ET
from typing import Any, Dict, List, Optional

import httpx

from otasync.services.channels.providers.base import BaseChannelAdapter
from otasync.services.channels.types import AdapterContext, AdapterResult

OTA_NS = "http://www.opentravel.org/OTA/2003/05"


def _flatten_plan_nights(payload: Dict[str, Any]) -> List[Dict[str, Any]]:
  out: List[Dict[str, Any]] = []
  for plan in payload.get("rate_plans") or []:
    for night in plan.get("nights") or []:
      out.append({"channel_rate_plan_id": plan.get("channel_rate_plan_id"), **night})
  return out


def _ota_root(tag: str, ctx: AdapterContext) -> ET.Element:
  root = ET.Element(tag, {"xmlns": OTA_NS, "Version": "1.0"})
  if ctx.event_id:
    root.set("EchoToken", ctx.event_id)
  return root


def _hotel_code(ctx: AdapterContext) -> str:
  return str(ctx.credentials.get("hotel_code") or ctx.credentials.get("hotel_id") or "")


def _to_xml(root: ET.Element) -> str:
  return ET.tostring(root, encoding="unicode")


def build_rate_amount_xml(ctx: AdapterContext, channel_room_id: str, currency: str, nights: List[Dict[str, Any]]) -> str:
  root = _ota_root("OTA_HotelRateAmountNotifRQ", ctx)
  messages = ET.SubElement(root, "RateAmountMessages", {"HotelCode": _hotel_code(ctx)})
  for night in nights:
    msg = ET.SubElement(messages, "RateAmountMessage")
    ET.SubElement(
      msg,
      "StatusApplicationControl",
      {
        "InvTypeCode": channel_room_id,
        "RatePlanCode": str(night.get("channel_rate_plan_id") or ""),
        "Start": night["date"],
        "End": night["date"],
      },
    )
    rates = ET.SubElement(msg, "Rates")
    rate = ET.SubElement(rates, "Rate")
    amounts = ET.SubElement(rate, "BaseByGuestAmts")
    ET.SubElement(amounts, "BaseByGuestAmt", {"AmountAfterTax": str(night["rate"]), "CurrencyCode": currency})
  return _to_xml(root)


def build_avail_xml(ctx: AdapterContext, channel_room_id: str, nights: List[Dict[str, Any]]) -> str:
  """OTA_HotelAvailNotifRQ carrying room counts and/or restrictions per night."""

  root = _ota_root("OTA_HotelAvailNotifRQ", ctx)
  messages = ET.SubElement(root, "AvailStatusMessages", {"HotelCode": _hotel_code(ctx)})
  for night in nights:
    attrs: Dict[str, str] = {}
    if "available" in night:
      attrs["BookingLimit"] = str(int(night["available"]))
    msg = ET.SubElement(messages, "AvailStatusMessage", attrs)
    control = {
      "InvTypeCode": channel_room_id,
      "Start": night["date"],
      "End": night["date"],
    }
    if night.get("channel_rate_plan_id"):
      control["RatePlanCode"] = str(night["channel_rate_plan_id"])
    ET.SubElement(msg, "StatusApplicationControl", control)

    if night.get("stop_sell") is not None:
      ET.SubElement(msg, "RestrictionStatus", {"Status": "Close" if night["stop_sell"] else "Open"})
    if night.get("closed_to_arrival") is not None:
      ET.SubElement(
        msg,
        "RestrictionStatus",
        {"Restriction": "Arrival", "Status": "Close" if night["closed_to_arrival"] else "Open"},
      )
    if night.get("closed_to_departure") is not None:
      ET.SubElement(
        msg,
        "RestrictionStatus",
        {"Restriction": "Departure", "Status": "Close" if night["closed_to_departure"] else "Open"},
      )
    if night.get("min_stay") is not None or night.get("max_stay") is not None:
      los = ET.SubElement(msg, "LengthsOfStay")
      if night.get("min_stay") is not None:
        ET.SubElement(los, "LengthOfStay", {"MinMaxMessageType": "SetMinLOS", "Time": str(night["min_stay"])})
      if night.get("max_stay") is not None:
        ET.SubElement(los, "LengthOfStay", {"MinMaxMessageType": "SetMaxLOS", "Time": str(night["max_stay"])})
  return _to_xml(root)


def build_content_xml(ctx: AdapterContext, payload: Dict[str, Any]) -> str:
  root = _ota_root("OTA_HotelDescriptiveContentNotifRQ", ctx)
  contents = ET.SubElement(root, "HotelDescriptiveContents")
  content = ET.SubElement(
    contents,
    "HotelDescriptiveContent",
    {"HotelCode": _hotel_code(ctx), "LanguageCode": str(payload.get("channel_language") or payload.get("language") or "")},
  )
  rooms = ET.SubElement(ET.SubElement(content, "FacilityInfo"), "GuestRooms")
  room = ET.SubElement(rooms, "GuestRoom", {"Code": str(payload.get("channel_room_id") or ""), "RoomTypeName": str(payload.get("name") or "")})
  desc = ET.SubElement(room, "Description")
  ET.SubElement(desc, "Text").text = str(payload.get("description") or "")
  media = ET.SubElement(room, "MultimediaDescriptions")
  for url in payload.get("images") or []:
    item = ET.SubElement(ET.SubElement(media, "ImageItems"), "ImageItem")
    ET.SubElement(item, "ImageFormat").text = str(url)
  return _to_xml(root)


class BookingComAdapter(BaseChannelAdapter):
  """Booking.com connectivity over OTA XML with HTTP Basic credentials.

  Booking.com answers 200 even for rejected messages; the response body
  then carries an `<Errors>` block, which is mapped to validation_failed.
  Hotel-initiated booking modifications are not accepted by the channel.
  """

  channel_name = "booking_com"
  default_base_url = "https://supply-xml.booking.com/hotels/ota/"

  def _auth_headers(self, ctx: AdapterContext) -> Dict[str, str]:
    username = str(ctx.credentials.get("username") or "")
    password = str(ctx.credentials.get("password") or "")
    token = base64.b64encode(f"{username}:{password}".encode("utf-8")).decode("ascii")
    return {"Authorization": f"Basic {token}"}

  def _body_error(self, resp: httpx.Response) -> Optional[str]:
    text = resp.text or ""
    if "<Errors" not in text and "<Error " not in text:
      return None
    try:
      root = ET.fromstring(text)
    except ET.ParseError:
      return "booking_com returned an unparseable error document"
    messages = [
      (el.get("ShortText") or el.text or el.get("Code") or "").strip()
      for el in root.iter()
      if el.tag.endswith("Error")
    ]
    messages = [m for m in messages if m]
    return "; ".join(messages) or "booking_com rejected the message"

  def _parse_body(self, resp: httpx.Response) -> Dict[str, Any]:
    text = resp.text or ""
    return {"success": "<Success" in text, "raw": text[:2000]}

  def _check(self, ctx: AdapterContext) -> Optional[AdapterResult]:
    return self._missing_credentials(ctx, "username", "password", "hotel_code")

  async def _post_xml(self, ctx: AdapterContext, path: str, body: str) -> AdapterResult:
    return await self._send(ctx, "POST", path, content=body, content_type="application/xml")

  async def push_rates(self, ctx: AdapterContext, payload: Dict[str, Any]) -> AdapterResult:
    missing = self._check(ctx)
    if missing:
      return missing
    nights = _flatten_plan_nights(payload)
    room = str(payload.get("channel_room_id") or "")
    currency = str(payload.get("currency") or ctx.currency)

    async def send(chunk):
      return await self._post_xml(ctx, "OTA_HotelRateAmountNotif", build_rate_amount_xml(ctx, room, currency, chunk))

    return await self._send_chunks(ctx, nights, send)

  async def push_availability(self, ctx: AdapterContext, payload: Dict[str, Any]) -> AdapterResult:
    missing = self._check(ctx)
    if missing:
      return missing
    room = str(payload.get("channel_room_id") or "")

    async def send(chunk):
      return await self._post_xml(ctx, "OTA_HotelAvailNotif", build_avail_xml(ctx, room, chunk))

    return await self._send_chunks(ctx, list(payload.get("nights") or []), send)

  async def push_restrictions(self, ctx: AdapterContext, payload: Dict[str, Any]) -> AdapterResult:
    missing = self._check(ctx)
    if missing:
      return missing
    room = str(payload.get("channel_room_id") or "")

    async def send(chunk):
      return await self._post_xml(ctx, "OTA_HotelAvailNotif", build_avail_xml(ctx, room, chunk))

    return await self._send_chunks(ctx, _flatten_plan_nights(payload), send)

  async def push_content(self, ctx: AdapterContext, payload: Dict[str, Any]) -> AdapterResult:
    missing = self._check(ctx)
    if missing:
      return missing
    return await self._post_xml(ctx, "OTA_HotelDescriptiveContentNotif", build_content_xml(ctx, payload))

  async def push_cancellation(self, ctx: AdapterContext, payload: Dict[str, Any]) -> AdapterResult:
    missing = self._check(ctx)
    if missing:
      return missing
    root = _ota_root("OTA_CancelRQ", ctx)
    root.set("CancelType", "Cancel")
    ET.SubElement(root, "UniqueID", {"Type": "14", "ID": str(payload.get("external_reservation_ref") or "")})
    return await self._post_xml(ctx, "OTA_Cancel", _to_xml(root))

  async def acknowledge_reservation(self, ctx: AdapterContext, external_reservation: Dict[str, Any]) -> AdapterResult:
    missing = self._check(ctx)
    if missing:
      return missing
    root = _ota_root("OTA_HotelResNotifRS", ctx)
    ET.SubElement(root, "Success")
    reservations = ET.SubElement(root, "HotelReservations")
    res = ET.SubElement(reservations, "HotelReservation")
    ids = ET.SubElement(ET.SubElement(res, "ResGlobalInfo"), "HotelReservationIDs")
    ET.SubElement(
      ids,
      "HotelReservationID",
      {"ResID_Type": "14", "ResID_Value": str(external_reservation.get("external_reservation_ref") or "")},
    )
    return await self._post_xml(ctx, "OTA_HotelResNotif", _to_xml(root))

  async def test_connection(self, ctx: AdapterContext) -> AdapterResult:
    missing = self._check(ctx)
    if missing:
      return missing
    return await self._send(ctx, "GET", f"hotels/{_hotel_code(ctx)}/info", content_type="application/xml")
