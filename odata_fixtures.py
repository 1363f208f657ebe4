"""
Shared metadata documents and collaborator stubs for the test modules.
"""

import asyncio

from sap_mcp_lib.catalog import ServiceCatalog
from sap_mcp_lib.models import ServiceDescriptor

BUSINESS_PARTNER_URL = "https://sap.example.com/sap/opu/odata/sap/API_BUSINESS_PARTNER"
PRODUCT_URL = "https://sap.example.com/sap/opu/odata4/sap/zproduct/srvd/sap/zproduct/0001"

BUSINESS_PARTNER_METADATA = b"""<?xml version="1.0" encoding="utf-8"?>
<edmx:Edmx Version="1.0" xmlns:edmx="http://schemas.microsoft.com/ado/2007/06/edmx"
    xmlns:m="http://schemas.microsoft.com/ado/2007/08/dataservices/metadata"
    xmlns:sap="http://www.sap.com/Protocols/SAPData">
  <edmx:DataServices m:DataServiceVersion="2.0">
    <Schema Namespace="API_BUSINESS_PARTNER" xml:lang="en" sap:schema-version="1"
        xmlns="http://schemas.microsoft.com/ado/2008/09/edm">
      <EntityType Name="A_CustomerType" sap:content-version="1">
        <Key>
          <PropertyRef Name="CustomerID"/>
        </Key>
        <Property Name="CustomerID" Type="Edm.String" Nullable="false" MaxLength="10" sap:label="Customer"/>
        <Property Name="CustomerName" Type="Edm.String" MaxLength="80" sap:label="Name"/>
        <Property Name="CustomerAccountGroup" Type="Edm.String" Nullable="false" MaxLength="4"/>
        <Property Name="EmailAddress" Type="Edm.String" MaxLength="241" sap:label="E-Mail Address"/>
        <Property Name="CreditLimit" Type="Edm.Decimal" Precision="15" Scale="2"/>
        <Property Name="CreationDate" Type="Edm.DateTime" Precision="0" sap:display-format="Date"/>
        <Property Name="IsBlocked" Type="Edm.Boolean"/>
        <Property Name="Country" Type="Edm.String" Nullable="false" MaxLength="3" DefaultValue="DE"/>
      </EntityType>
      <EntityType Name="A_CustomerSalesAreaType" sap:content-version="1">
        <Key>
          <PropertyRef Name="Customer"/>
          <PropertyRef Name="SalesOrganization"/>
        </Key>
        <Property Name="Customer" Type="Edm.String" Nullable="false" MaxLength="10"/>
        <Property Name="SalesOrganization" Type="Edm.String" Nullable="false" MaxLength="4"/>
        <Property Name="Currency" Type="Edm.String" MaxLength="5"/>
      </EntityType>
      <EntityContainer Name="API_BUSINESS_PARTNER_Entities" m:IsDefaultEntityContainer="true">
        <EntitySet Name="Customer" EntityType="API_BUSINESS_PARTNER.A_CustomerType"
            sap:creatable="true" sap:updatable="true" sap:deletable="false" sap:content-version="1"/>
        <EntitySet Name="CustomerSalesArea" EntityType="API_BUSINESS_PARTNER.A_CustomerSalesAreaType"
            sap:content-version="1"/>
      </EntityContainer>
    </Schema>
  </edmx:DataServices>
</edmx:Edmx>
"""

PRODUCT_METADATA_V4 = b"""<?xml version="1.0" encoding="utf-8"?>
<edmx:Edmx Version="4.0" xmlns:edmx="http://docs.oasis-open.org/odata/ns/edmx">
  <edmx:DataServices>
    <Schema Namespace="com.example.product" Alias="SAP__self" xmlns="http://docs.oasis-open.org/odata/ns/edm">
      <EntityType Name="BaseRecord">
        <Key>
          <PropertyRef Name="ID"/>
        </Key>
        <Property Name="ID" Type="Edm.Guid" Nullable="false"/>
        <Property Name="CreatedAt" Type="Edm.DateTimeOffset"/>
      </EntityType>
      <EntityType Name="Product" BaseType="SAP__self.BaseRecord">
        <Property Name="Name" Type="Edm.String" Nullable="false" MaxLength="40"/>
        <Property Name="Price" Type="Edm.Decimal" Scale="2"/>
        <Property Name="Weight" Type="Edm.Double"/>
        <Property Name="ReleaseDate" Type="Edm.Date"/>
        <Property Name="Tags" Type="Collection(Edm.String)"/>
        <Property Name="Dimensions" Type="com.example.product.Dimensions"/>
      </EntityType>
      <EntityType Name="Supplier">
        <Key>
          <PropertyRef Name="SupplierID"/>
        </Key>
        <Property Name="SupplierID" Type="Edm.Int32" Nullable="false"/>
      </EntityType>
      <EntityContainer Name="Container">
        <EntitySet Name="Products" EntityType="com.example.product.Product"/>
        <EntitySet Name="Suppliers" EntityType="com.example.product.Supplier">
          <Annotation Term="Org.OData.Capabilities.V1.InsertRestrictions">
            <Record><PropertyValue Property="Insertable" Bool="true"/></Record>
          </Annotation>
        </EntitySet>
      </EntityContainer>
      <Annotations Target="SAP__self.Container/Products">
        <Annotation Term="Org.OData.Capabilities.V1.InsertRestrictions">
          <Record><PropertyValue Property="Insertable" Bool="false"/></Record>
        </Annotation>
        <Annotation Term="Org.OData.Capabilities.V1.UpdateRestrictions">
          <Record><PropertyValue Property="Updatable"><Bool>true</Bool></PropertyValue></Record>
        </Annotation>
        <Annotation Term="Org.OData.Capabilities.V1.DeleteRestrictions">
          <Record><PropertyValue Property="Deletable" Bool="true"/></Record>
        </Annotation>
      </Annotations>
    </Schema>
  </edmx:DataServices>
</edmx:Edmx>
"""


def business_partner_service(**overrides):
    values = dict(
        service_id="API_BUSINESS_PARTNER",
        service_name="Business Partner (A2X)",
        description="Read and maintain business partners, customers and suppliers",
        odata_version="v2",
        service_url=BUSINESS_PARTNER_URL,
        categories=["business-partner"],
        entity_names=["Customer", "CustomerSalesArea"],
    )
    values.update(overrides)
    return ServiceDescriptor(**values)


def product_service():
    return ServiceDescriptor(
        service_id="ZPRODUCT_SRV",
        service_name="Products",
        description="Product master",
        odata_version="4.0",
        service_url=PRODUCT_URL,
        categories=["materials"],
        entity_names=["Products", "Suppliers"],
    )


def sales_order_service():
    return ServiceDescriptor(
        service_id="API_SALES_ORDER_SRV",
        service_name="Sales Order (A2X)",
        description="Create, read, update and delete sales orders",
        service_url="https://sap.example.com/sap/opu/odata/sap/API_SALES_ORDER_SRV",
        categories=["sales"],
        entity_names=["A_SalesOrder", "A_SalesOrderItem"],
    )


def make_catalog():
    return ServiceCatalog([business_partner_service(), sales_order_service(), product_service()])


class StubFetcher:
    """Metadata-fetch collaborator that counts calls and can be made slow or failing."""

    def __init__(self, documents=None, delay=0.0, failures=0, error=None):
        self.documents = documents or {
            "API_BUSINESS_PARTNER": BUSINESS_PARTNER_METADATA,
            "ZPRODUCT_SRV": PRODUCT_METADATA_V4,
        }
        self.delay = delay
        self.failures = failures
        self.error = error or ConnectionError("connection reset by peer")
        self.calls = []

    async def fetch(self, service, entity_name):
        self.calls.append((service.service_id, entity_name))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.failures > 0:
            self.failures -= 1
            raise self.error
        return self.documents[service.service_id]
